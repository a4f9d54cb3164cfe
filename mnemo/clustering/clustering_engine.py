"""
Semantic Clustering Engine.

Groups embedded events into cluster nodes in two stages:

1. Stage 1 - greedy agglomeration at the tight threshold T1 produces small,
   coherent provisional groups.
2. Stage 2 - provisional groups whose centroids are at least T2 (< T1)
   similar are consolidated, with a purity check bounding dispersion.

Events without a partner stay one-member clusters. A cluster node is stored
before any member's cluster_id points at it, so an interrupted or failed
run leaves every event with its last committed assignment.

Every public operation returns a dict with "success"; whole-operation
failures come back as {"success": False, "error": ...}.
"""

from __future__ import annotations

import itertools
import threading
import time
from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Optional, Sequence

import numpy as np

from config import thresholds
from mnemo.clustering.agglomeration import Group, agglomerate, member_similarities, seed_groups
from mnemo.core.clock import ensure_utc, utcnow
from mnemo.core.errors import ClusteringFailure, EmbeddingUnavailable, MnemoError, OperationCancelled
from mnemo.core.logging_config import get_logger
from mnemo.core.progress import CancellationToken, ProgressChannel, check_cancelled, report
from mnemo.graph.graph_models import ClusteringMeta, ClusterNode, EventNode
from mnemo.graph.graph_store import EventGraphStore
from mnemo.services.llm_service import LLMService
from mnemo.vector.embedding_index import EmbeddingIndex
from mnemo.vector.vector_index import as_vector, centroid, cosine_similarity, top_k_by_cosine

logger = get_logger(__name__)

ALGORITHM = "two-stage-agglomerative"


def quality_level(score: float) -> str:
    if score >= thresholds.QUALITY_GOOD:
        return "good"
    if score >= thresholds.QUALITY_ACCEPTABLE:
        return "acceptable"
    return "poor"


class SemanticClusteringEngine:
    def __init__(
        self,
        store: EventGraphStore,
        index: EmbeddingIndex,
        llm: Optional[LLMService] = None,
        stage1_threshold: float = thresholds.STAGE1_THRESHOLD,
        stage2_threshold: float = thresholds.STAGE2_THRESHOLD,
        stage1_max_size: int = thresholds.STAGE1_MAX_CLUSTER_SIZE,
        stage2_max_size: int = thresholds.STAGE2_MAX_CLUSTER_SIZE,
        merge_threshold: float = thresholds.MERGE_SIMILARITY_THRESHOLD,
        purity_threshold: float = thresholds.PURITY_THRESHOLD,
        incremental_window_days: int = thresholds.INCREMENTAL_WINDOW_DAYS,
    ):
        self.store = store
        self.index = index
        self.llm = llm or LLMService()
        self.stage1_threshold = stage1_threshold
        self.stage2_threshold = stage2_threshold
        self.stage1_max_size = stage1_max_size
        self.stage2_max_size = stage2_max_size
        self.merge_threshold = merge_threshold
        self.purity_threshold = purity_threshold
        self.incremental_window_days = incremental_window_days

        # One clustering run at a time; queries never take this lock
        self._run_lock = threading.Lock()
        self._seq = itertools.count(1)
        self._flagged_outliers: set[str] = set()

    def parameters(self) -> dict[str, Any]:
        return {
            "stage1_threshold": self.stage1_threshold,
            "stage2_threshold": self.stage2_threshold,
            "stage1_max_size": self.stage1_max_size,
            "stage2_max_size": self.stage2_max_size,
            "merge_threshold": self.merge_threshold,
            "purity_threshold": self.purity_threshold,
        }

    # =========================================================================
    # Full and incremental runs
    # =========================================================================

    def cluster_init_all(
        self,
        progress: Optional[ProgressChannel] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> dict[str, Any]:
        """Recluster everything: drop assignments, regenerate joint embeddings, run both stages."""
        started = time.perf_counter()
        with self._run_lock:
            try:
                report(progress, "init", "Clearing previous clusters")
                self._clear()
                embedding = self.index.generate_for_all(force=True, progress=progress, cancel=cancel)
                if embedding["cancelled"]:
                    raise OperationCancelled("cancelled during embedding")

                events = self.store.events_with_embeddings()
                unresolved = [e.id for e in self.store.query_events(lambda e: not e.embedding)]
                self._flagged_outliers = set(unresolved)
                if not events:
                    raise ClusteringFailure("no events with embeddings to cluster")

                stage1, stage2 = self._two_stage(events, True, progress, cancel)
                created = self._persist(events, stage1, stage2, True, progress, cancel)
                self._write_meta(len(events), created)
                report(progress, "init", f"Done: {len(created)} clusters")
                return {
                    "success": True,
                    "stage1_clusters": len(stage1),
                    "stage2_clusters": len(stage2),
                    "events_processed": len(events),
                    "unresolved_outliers": unresolved,
                    "embedding_failures": embedding["failures"],
                    "duration_seconds": time.perf_counter() - started,
                }
            except Exception as e:
                return self._failure("cluster_init_all", e, started, progress)

    def organize_graph(
        self,
        force_recluster: bool = False,
        use_two_stage: bool = True,
        progress: Optional[ProgressChannel] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> dict[str, Any]:
        """
        Cluster unclustered or recently changed events.

        Candidates first try to join an existing cluster (>= merge threshold);
        the rest are clustered among themselves. force_recluster drops all
        clusters and reclusters every embedded event.
        """
        started = time.perf_counter()
        with self._run_lock:
            try:
                embedding = self.index.generate_for_all(force=False, progress=progress, cancel=cancel)
                if embedding["cancelled"]:
                    raise OperationCancelled("cancelled during embedding")
                if force_recluster:
                    self._clear(keep_meta=True)
                    candidates = self.store.events_with_embeddings()
                else:
                    candidates = self._incremental_candidates()
                report(progress, "organize", f"{len(candidates)} candidate events")

                if not candidates:
                    return {
                        "success": True,
                        "clusters_created": 0,
                        "events_processed": 0,
                        "events_clustered": 0,
                        "avg_cluster_size": None,
                        "avg_similarity": None,
                        "duration_seconds": time.perf_counter() - started,
                    }

                merged, _, created = self._merge_then_cluster(
                    candidates, use_two_stage, progress, cancel, allow_merge=not force_recluster
                )
                clustered = merged + sum(c.member_count for c in created)
                self._write_meta(len(candidates), created, events_clustered=clustered)
                return {
                    "success": True,
                    "clusters_created": len(created),
                    "events_processed": len(candidates),
                    "events_clustered": clustered,
                    "merged_events": merged,
                    "avg_cluster_size": (float(np.mean([c.member_count for c in created])) if created else None),
                    "avg_similarity": (float(np.mean([c.avg_similarity for c in created])) if created else None),
                    "embedding_failures": embedding["failures"],
                    "duration_seconds": time.perf_counter() - started,
                }
            except Exception as e:
                return self._failure("organize_graph", e, started, progress)

    def cluster_by_date_range(
        self,
        start: datetime,
        end: datetime,
        progress: Optional[ProgressChannel] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> dict[str, Any]:
        """
        Recluster events whose time falls in [start, end].

        Events already in a cluster they still fit (>= merge threshold to its
        centroid) stay. The others are detached, offered to existing
        clusters, and the remainder clustered in two stages. Afterwards each
        in-range event with an embedding belongs to exactly one cluster.
        """
        started = time.perf_counter()
        with self._run_lock:
            try:
                start, end = ensure_utc(start), ensure_utc(end)
                if start > end:
                    raise ClusteringFailure("start must not be after end")
                in_range = self.store.events_in_range(start, end)
                if not in_range:
                    raise ClusteringFailure("no events in date range")
                report(progress, "date_range", f"{len(in_range)} events between {start.date()} and {end.date()}")

                failures = self._embed_missing(in_range, progress, cancel)
                in_range = [e for e in self.store.events_in_range(start, end) if e.embedding]
                unresolved = [f["id"] for f in failures]
                self._flagged_outliers.update(unresolved)
                if not in_range:
                    raise ClusteringFailure("no events with embeddings in date range")

                kept, candidates = [], []
                clusters = {c.id: c for c in self.store.all_clusters(level=2)}
                for event in in_range:
                    current = clusters.get(event.cluster_id) if event.cluster_id else None
                    if current is not None and current.embedding and \
                            cosine_similarity(event.embedding, current.embedding) >= self.merge_threshold:
                        kept.append(event)
                    else:
                        candidates.append(event)
                self._detach([e for e in candidates if e.cluster_id])
                report(progress, "date_range", f"{len(kept)} kept, {len(candidates)} to place")

                merged, _, created = self._merge_then_cluster(candidates, True, progress, cancel)
                self._write_meta(len(in_range), created,
                                 events_clustered=merged + sum(c.member_count for c in created))
                return {
                    "success": True,
                    "events_processed": len(in_range),
                    "kept_events": len(kept),
                    "merged_events": merged,
                    "new_clusters": len(created),
                    "unresolved_outliers": unresolved,
                    "embedding_failures": failures,
                    "duration_seconds": time.perf_counter() - started,
                }
            except Exception as e:
                return self._failure("cluster_by_date_range", e, started, progress)

    # =========================================================================
    # Maintenance
    # =========================================================================

    def detect_and_reassign_outliers(
        self,
        progress: Optional[ProgressChannel] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> dict[str, Any]:
        """
        Move members below the purity threshold to the nearest other cluster
        above the merge threshold; members with no such cluster become
        unclustered singletons and are flagged as unresolved outliers.
        """
        started = time.perf_counter()
        with self._run_lock:
            try:
                clusters = [c for c in self.store.all_clusters(level=2) if c.embedding]
                centroids = [(c.id, c.embedding) for c in clusters]
                detected, reassigned, singletons = [], 0, 0
                touched: set[str] = set()

                for n, cluster in enumerate(clusters, start=1):
                    check_cancelled(cancel)
                    for event in self.store.events_in_cluster(cluster.id):
                        if not event.embedding:
                            continue
                        if cosine_similarity(event.embedding, cluster.embedding) >= self.purity_threshold:
                            continue
                        detected.append(event.id)
                        others = [(cid, vec) for cid, vec in centroids if cid != cluster.id]
                        best = top_k_by_cosine(event.embedding, others, 1)
                        if best and best[0][1] >= self.merge_threshold:
                            self.store.set_event_cluster(event.id, best[0][0])
                            touched.add(best[0][0])
                            reassigned += 1
                        else:
                            self.store.set_event_cluster(event.id, None)
                            self._flagged_outliers.add(event.id)
                            singletons += 1
                        touched.add(cluster.id)
                    report(progress, "outliers", f"Checked {n}/{len(clusters)} clusters",
                           fraction=n / len(clusters))

                for cid in touched:
                    self._refresh_cluster(cid)
                logger.info("[Clustering] outliers=%d reassigned=%d singletons=%d",
                            len(detected), reassigned, singletons)
                return {
                    "success": True,
                    "outliers_detected": len(detected),
                    "reassigned": reassigned,
                    "new_singletons": singletons,
                    "outlier_event_ids": detected,
                    "duration_seconds": time.perf_counter() - started,
                }
            except Exception as e:
                return self._failure("detect_and_reassign_outliers", e, started, progress)

    def clear_all_clusters(self, progress: Optional[ProgressChannel] = None) -> dict[str, Any]:
        """Irreversible: delete every cluster node and clustering record, unassign all events."""
        started = time.perf_counter()
        with self._run_lock:
            try:
                counts = self._clear()
                report(progress, "clear", f"Removed {counts['clusters_removed']} clusters")
                self._flagged_outliers.clear()
                return {"success": True, **counts, "duration_seconds": time.perf_counter() - started}
            except Exception as e:
                return self._failure("clear_all_clusters", e, started, progress)

    # =========================================================================
    # Queries
    # =========================================================================

    def get_all_clusters(self, include_provisional: bool = False) -> list[ClusterNode]:
        if include_provisional:
            return self.store.all_clusters()
        return self.store.all_clusters(level=2)

    def get_cluster_members(self, cluster_id: str) -> list[EventNode]:
        return self.store.events_in_cluster(cluster_id)

    def get_unclustered_events(self) -> list[EventNode]:
        return self.store.query_events(lambda e: e.cluster_id is None)

    def get_unresolved_outliers(self) -> list[str]:
        """Events that are unclustered on purpose: no embedding, or rejected as outliers."""
        return [e.id for e in self.get_unclustered_events()
                if e.id in self._flagged_outliers or not e.embedding]

    def get_clustering_history(self) -> list[ClusteringMeta]:
        return self.store.all_clustering_meta()

    def get_clustering_quality_metrics(self) -> dict[str, Any]:
        """
        Composite quality of the current final clusters.

        quality_score = clamp(0.4 * avg_intra_similarity + 0.4 * avg_inter_distance
                              + 0.2 * (1 - outlier_ratio), 0, 1)
        Inter-cluster distance is sampled: each of the first N clusters against
        its next few neighbours. With fewer than two clusters it is 0.
        """
        clusters = [c for c in self.store.all_clusters(level=2) if c.embedding]
        if not clusters:
            return {
                "total_clusters": 0,
                "avg_intra_similarity": 0.0,
                "avg_cluster_size": 0.0,
                "outlier_ratio": 0.0,
                "avg_inter_distance": 0.0,
                "quality_score": 0.0,
                "quality_level": quality_level(0.0),
            }

        intra_means, sizes = [], []
        members_total = outliers = 0
        for cluster in clusters:
            sims = [cosine_similarity(e.embedding, cluster.embedding)
                    for e in self.store.events_in_cluster(cluster.id) if e.embedding]
            sizes.append(cluster.member_count)
            if not sims:
                continue
            intra_means.append(float(np.mean(sims)))
            members_total += len(sims)
            outliers += sum(1 for s in sims if s < self.purity_threshold)

        sample = clusters[:thresholds.INTER_DISTANCE_SAMPLE_CLUSTERS]
        distances = []
        for i in range(len(sample)):
            for j in range(i + 1, min(i + thresholds.INTER_DISTANCE_SAMPLE_SPAN, len(sample))):
                distances.append(1.0 - cosine_similarity(sample[i].embedding, sample[j].embedding))

        avg_intra = float(np.mean(intra_means)) if intra_means else 0.0
        avg_inter = min(1.0, float(np.mean(distances))) if distances else 0.0
        outlier_ratio = (outliers / members_total) if members_total else 0.0
        score = 0.4 * avg_intra + 0.4 * avg_inter + 0.2 * (1.0 - outlier_ratio)
        score = max(0.0, min(1.0, score))
        return {
            "total_clusters": len(clusters),
            "avg_intra_similarity": avg_intra,
            "avg_cluster_size": float(np.mean(sizes)),
            "outlier_ratio": outlier_ratio,
            "avg_inter_distance": avg_inter,
            "quality_score": score,
            "quality_level": quality_level(score),
        }

    # =========================================================================
    # Internals
    # =========================================================================

    def _failure(self, op: str, error: Exception, started: float,
                 progress: Optional[ProgressChannel]) -> dict[str, Any]:
        if isinstance(error, MnemoError):
            logger.warning("[Clustering] %s failed: %s", op, error)
        else:
            logger.exception("[Clustering] %s failed", op)
        report(progress, op, f"Failed: {error}")
        return {
            "success": False,
            "error": str(error),
            "cancelled": isinstance(error, OperationCancelled),
            "duration_seconds": time.perf_counter() - started,
        }

    def _clear(self, keep_meta: bool = False) -> dict[str, int]:
        events_cleared = self.store.clear_event_clusters()
        clusters_removed = self.store.remove_all_clusters()
        meta_removed = 0 if keep_meta else self.store.remove_all_clustering_meta()
        return {
            "clusters_removed": clusters_removed,
            "events_cleared": events_cleared,
            "meta_removed": meta_removed,
        }

    def _two_stage(
        self,
        events: Sequence[EventNode],
        use_two_stage: bool,
        progress: Optional[ProgressChannel],
        cancel: Optional[CancellationToken],
    ) -> tuple[list[Group], list[Group]]:
        vectors = [as_vector(e.embedding) for e in events]
        report(progress, "stage1", f"Stage 1: grouping {len(events)} events at {self.stage1_threshold:.2f}")
        stage1 = agglomerate(seed_groups(vectors), self.stage1_threshold, self.stage1_max_size)
        report(progress, "stage1", f"Stage 1: {len(stage1)} provisional groups")
        check_cancelled(cancel)
        if not use_two_stage:
            return stage1, stage1

        def _pure_enough(members: list[int]) -> bool:
            return float(np.mean(member_similarities(vectors, members))) >= self.purity_threshold

        report(progress, "stage2", f"Stage 2: consolidating at {self.stage2_threshold:.2f}")
        stage2 = agglomerate(stage1, self.stage2_threshold, self.stage2_max_size, _pure_enough)
        report(progress, "stage2", f"Stage 2: {len(stage2)} clusters")
        check_cancelled(cancel)
        return stage1, stage2

    def _persist(
        self,
        events: Sequence[EventNode],
        stage1: list[Group],
        stage2: list[Group],
        use_two_stage: bool,
        progress: Optional[ProgressChannel],
        cancel: Optional[CancellationToken],
    ) -> list[ClusterNode]:
        created = []
        for n, group in enumerate(stage2, start=1):
            check_cancelled(cancel)
            members = [events[m] for m in group.members]
            cluster = self.store.put_cluster(self._build_cluster(members, level=2))
            if use_two_stage and len(group.children) > 1:
                for child in group.children:
                    sub = self._build_cluster([events[m] for m in stage1[child].members],
                                              level=1, parent_id=cluster.id, use_llm=False)
                    self.store.put_cluster(sub)
            for event in members:
                self.store.set_event_cluster(event.id, cluster.id)
            created.append(cluster)
            report(progress, "persist", f"Stored cluster {n}/{len(stage2)}: {cluster.name}",
                   fraction=n / len(stage2))
        return created

    def _merge_then_cluster(
        self,
        candidates: Sequence[EventNode],
        use_two_stage: bool,
        progress: Optional[ProgressChannel],
        cancel: Optional[CancellationToken],
        allow_merge: bool = True,
    ) -> tuple[int, list[Group], list[ClusterNode]]:
        merged = 0
        remaining = list(candidates)
        if allow_merge:
            existing = [(c.id, c.embedding) for c in self.store.all_clusters(level=2) if c.embedding]
            remaining, touched = [], set()
            for event in candidates:
                best = top_k_by_cosine(event.embedding, existing, 1) if existing else []
                if best and best[0][1] >= self.merge_threshold:
                    self.store.set_event_cluster(event.id, best[0][0])
                    touched.add(best[0][0])
                    merged += 1
                else:
                    remaining.append(event)
            for cid in touched:
                self._refresh_cluster(cid)
            report(progress, "merge", f"{merged} events joined existing clusters")

        if not remaining:
            return merged, [], []
        stage1, stage2 = self._two_stage(remaining, use_two_stage, progress, cancel)
        created = self._persist(remaining, stage1, stage2, use_two_stage, progress, cancel)
        return merged, stage1, created

    def _incremental_candidates(self) -> list[EventNode]:
        """Unclustered embedded events, plus recently edited ones detached from their stale cluster."""
        cutoff = utcnow() - timedelta(days=self.incremental_window_days)
        clusters = {c.id: c for c in self.store.all_clusters(level=2)}
        candidates, stale = [], []
        for event in self.store.events_with_embeddings():
            if event.cluster_id is None:
                candidates.append(event)
                continue
            cluster = clusters.get(event.cluster_id)
            if cluster is None:
                stale.append(event)
            elif event.last_updated >= cutoff and event.last_updated > cluster.last_updated:
                stale.append(event)
        self._detach(stale)
        return candidates + [e.model_copy(update={"cluster_id": None}) for e in stale]

    def _detach(self, events: Sequence[EventNode]) -> None:
        touched = set()
        for event in events:
            if event.cluster_id:
                touched.add(event.cluster_id)
            self.store.set_event_cluster(event.id, None)
        for cid in touched:
            self._refresh_cluster(cid)

    def _embed_missing(self, events: Sequence[EventNode], progress: Optional[ProgressChannel],
                       cancel: Optional[CancellationToken]) -> list[dict[str, str]]:
        failures = []
        missing = [e for e in events if not e.embedding]
        for n, event in enumerate(missing, start=1):
            check_cancelled(cancel)
            try:
                self.store.set_event_embedding(event.id, self.index.embed_event(event).tolist())
            except EmbeddingUnavailable as e:
                failures.append(e.to_dict())
            if n % self.index.batch_size == 0:
                report(progress, "embedding", f"Embedded {n}/{len(missing)}")
                if self.index.throttle_seconds:
                    time.sleep(self.index.throttle_seconds)
        return failures

    def _refresh_cluster(self, cluster_id: str) -> None:
        """Recompute a cluster from its current members; delete it when empty."""
        cluster = self.store.get_cluster(cluster_id)
        if cluster is None:
            return
        members = self.store.events_in_cluster(cluster_id)
        if not members:
            self.store.delete_cluster(cluster_id)
            for child in self.store.all_clusters(level=1):
                if child.parent_cluster_id == cluster_id:
                    self.store.delete_cluster(child.id)
            return
        rebuilt = self._build_cluster(members, level=cluster.level,
                                      parent_id=cluster.parent_cluster_id, use_llm=False)
        rebuilt.id = cluster.id
        rebuilt.name = cluster.name
        self.store.put_cluster(rebuilt)

    def _build_cluster(self, members: Sequence[EventNode], level: int,
                       parent_id: Optional[str] = None, use_llm: bool = True) -> ClusterNode:
        vectors = [as_vector(e.embedding) for e in members if e.embedding]
        center = centroid(vectors) if vectors else None
        sims = [cosine_similarity(v, center) for v in vectors] if center is not None else []
        times = [e.event_time for e in members]
        return ClusterNode(
            id=f"cluster_{level}_{int(time.time() * 1000)}_{next(self._seq)}",
            name=self._name_cluster(members, use_llm),
            description=self._describe(members),
            member_count=len(members),
            member_ids=[e.id for e in members],
            earliest_event_time=min(times) if times else None,
            latest_event_time=max(times) if times else None,
            embedding=center.tolist() if center is not None else None,
            avg_similarity=float(np.mean(sims)) if sims else 0.0,
            level=level,
            parent_cluster_id=parent_id,
        )

    def _name_cluster(self, members: Sequence[EventNode], use_llm: bool) -> str:
        if len(members) == 1:
            return members[0].name
        if use_llm and self.llm.available:
            title = self.llm.generate_cluster_title([f"{e.name} ({e.type})" for e in members])
            if title:
                return title
        top_type = Counter(e.type for e in members).most_common(1)[0][0]
        return f"{top_type}·{members[0].name}"

    @staticmethod
    def _describe(members: Sequence[EventNode]) -> str:
        types = [t for t, _ in Counter(e.type for e in members).most_common(3)]
        return f"contains {len(members)} events: {', '.join(types)}"

    def _write_meta(self, total_events: int, created: Sequence[ClusterNode],
                    events_clustered: Optional[int] = None) -> None:
        clustered = sum(c.member_count for c in created) if events_clustered is None else events_clustered
        self.store.put_clustering_meta(ClusteringMeta(
            total_events=total_events,
            clusters_created=len(created),
            events_clustered=clustered,
            algorithm=ALGORITHM,
            parameters=self.parameters(),
            avg_cluster_size=float(np.mean([c.member_count for c in created])) if created else 0.0,
            avg_similarity=float(np.mean([c.avg_similarity for c in created])) if created else 0.0,
        ))
