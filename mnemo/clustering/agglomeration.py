"""
Greedy similarity-threshold agglomeration.

Groups start from seeds (single events, or stage-1 groups), each carrying
the sum of its member vectors. The most similar pair of group centroids is
merged while that similarity stays at or above the threshold. Ties resolve
to the lowest index pair, so results are deterministic for a given input
order.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence

import numpy as np

from mnemo.vector.vector_index import as_vector, normalize


@dataclass
class Group:
    members: list[int]
    vector_sum: np.ndarray
    children: list[int] = field(default_factory=list)  # seed indices merged into this group

    @property
    def centroid(self) -> np.ndarray:
        return normalize(self.vector_sum)


def seed_groups(vectors: Sequence) -> list[Group]:
    return [Group(members=[i], vector_sum=normalize(v), children=[i]) for i, v in enumerate(vectors)]


def agglomerate(
    seeds: list[Group],
    threshold: float,
    max_size: Optional[int] = None,
    accept: Optional[Callable[[list[int]], bool]] = None,
) -> list[Group]:
    """
    Merge seeds greedily by centroid cosine similarity.

    max_size caps the member count of a merged group; accept, when given,
    vetoes a merge by its would-be member list. A rejected pair is only
    reconsidered after one side absorbs another group. Returned groups are
    ordered by their smallest member.
    """
    n = len(seeds)
    if n <= 1:
        return [Group(list(g.members), as_vector(g.vector_sum).copy(), [i]) for i, g in enumerate(seeds)]

    groups: list[Optional[Group]] = [
        Group(list(g.members), as_vector(g.vector_sum).copy(), [i]) for i, g in enumerate(seeds)
    ]
    centroids = np.stack([g.centroid for g in groups])
    sims = centroids @ centroids.T
    np.fill_diagonal(sims, -np.inf)
    sims = np.where(np.isfinite(sims), sims, -np.inf)
    # Upper triangle only so argmax picks the (i < j) pair
    sims[np.tril_indices(n)] = -np.inf

    while True:
        flat = int(np.argmax(sims))
        i, j = divmod(flat, n)
        best = sims[i, j]
        if not np.isfinite(best) or best < threshold:
            break
        gi, gj = groups[i], groups[j]
        merged_members = gi.members + gj.members
        if (max_size is not None and len(merged_members) > max_size) or \
                (accept is not None and not accept(merged_members)):
            sims[i, j] = -np.inf
            continue

        gi.members = merged_members
        gi.vector_sum = gi.vector_sum + gj.vector_sum
        gi.children.extend(gj.children)
        groups[j] = None
        sims[j, :] = -np.inf
        sims[:, j] = -np.inf

        c = gi.centroid
        for k in range(n):
            if k == i or groups[k] is None:
                continue
            s = float(np.dot(c, groups[k].centroid))
            if k < i:
                sims[k, i] = s
            else:
                sims[i, k] = s

    out = [g for g in groups if g is not None]
    for g in out:
        g.members.sort()
    out.sort(key=lambda g: g.members[0])
    return out


def member_similarities(vectors: Sequence, members: Sequence[int]) -> list[float]:
    """Cosine similarity of each member to the group's centroid."""
    c = normalize(np.sum([normalize(vectors[m]) for m in members], axis=0))
    return [float(np.dot(normalize(vectors[m]), c)) for m in members]
