"""
KnowledgeContext - the components of one running engine, built once at
start-up and handed to whatever needs them (routes, jobs, tests).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from config.settings import settings
from mnemo.cache.categorized_cache import CategorizedCache
from mnemo.clustering.clustering_engine import SemanticClusteringEngine
from mnemo.conversation.context_tracker import ConversationContextTracker
from mnemo.db.session import Database, init_db
from mnemo.focus.focus_tracker import PersonalFocusTracker
from mnemo.graph.graph_store import EventGraphStore
from mnemo.graph.importer import BulkImporter
from mnemo.graph.ingestion import KnowledgeIngestor
from mnemo.integration.background_jobs import BackgroundJobQueue
from mnemo.personal.knowledge_service import PersonalKnowledgeService
from mnemo.services.llm_service import LLMComplete, LLMService
from mnemo.vector.embedding_index import EmbedFn, EmbeddingIndex


@dataclass
class KnowledgeContext:
    db: Database
    store: EventGraphStore
    index: EmbeddingIndex
    llm: LLMService
    engine: SemanticClusteringEngine
    cache: CategorizedCache
    conversation: ConversationContextTracker
    focus: PersonalFocusTracker
    ingestor: KnowledgeIngestor
    importer: BulkImporter
    service: PersonalKnowledgeService
    jobs: BackgroundJobQueue

    @classmethod
    def build(
        cls,
        sqlite_path: Optional[str] = None,
        embed_fn: Optional[EmbedFn] = None,
        llm_complete: Optional[LLMComplete] = None,
        job_workers: Optional[int] = None,
    ) -> "KnowledgeContext":
        db = init_db(sqlite_path or settings.sqlite_path)
        store = EventGraphStore(db)
        index = EmbeddingIndex(store, embed_fn=embed_fn)
        llm = LLMService(llm_complete, throttle_seconds=settings.throttle_seconds)
        engine = SemanticClusteringEngine(store, index, llm=llm)
        cache = CategorizedCache()
        conversation = ConversationContextTracker()
        focus = PersonalFocusTracker()
        ingestor = KnowledgeIngestor(store, llm=llm, throttle_seconds=settings.throttle_seconds)
        service = PersonalKnowledgeService(
            store, index, engine,
            cache=cache, conversation=conversation, focus=focus, ingestor=ingestor,
        )
        return cls(
            db=db,
            store=store,
            index=index,
            llm=llm,
            engine=engine,
            cache=cache,
            conversation=conversation,
            focus=focus,
            ingestor=ingestor,
            importer=BulkImporter(store, index),
            service=service,
            jobs=BackgroundJobQueue(num_workers=job_workers or settings.job_workers),
        )

    def close(self) -> None:
        self.jobs.shutdown(wait=True)
        self.db.close()
