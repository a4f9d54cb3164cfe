from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="MNEMO_",
        extra="ignore"  # Ignore unrelated env vars (like MNEMO_LLM_KEY)
    )

    sqlite_path: str = ":memory:"
    embedding_dim: int = 384
    embedding_model: str = "all-MiniLM-L6-v2"
    use_real_embeddings: bool = True
    log_level: str = "INFO"

    # Per-category cache capacity (sums to the utilization target)
    cache_capacity_conversation_grasp: int = 100
    cache_capacity_intent_understanding: int = 80
    cache_capacity_knowledge_reserve: int = 120
    cache_capacity_personal_info: int = 120
    cache_capacity_proactive_data: int = 80
    cache_utilization_target: int = 500

    session_gap_minutes: int = 30

    # Background work against the embedding / LLM collaborators
    embedding_batch_size: int = 10
    throttle_seconds: float = 0.0
    job_workers: int = 2
    job_history_size: int = 100

    api_host: str = "0.0.0.0"
    api_port: int = 8000

settings = Settings()
