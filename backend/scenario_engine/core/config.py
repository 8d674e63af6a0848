"""Runtime configuration helpers.

Classes:
    Settings: Pydantic settings model capturing environment-driven defaults.

Functions:
    get_settings(): Return a cached Settings instance for dependency injection.
"""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "Cluster Scenario Engine API"
    database_url: str = "sqlite+aiosqlite:///./data/cluster_scenarios.db"
    log_level: str = "INFO"
    log_format: str = "text"
    default_k_value: int = 25
    default_similarity_threshold: float = 0.60
    max_k_value: int = 500
    clustering_max_iterations: int = 100
    clustering_retry_attempts: int = 3
    clustering_seed: int = 42
    centroid_merge_similarity: float = 0.95
    sample_title_limit: int = 5
    scenario_item_preview_limit: int = 50
    scenario_list_limit: int = 20
    silhouette_sample_size: int = 2000


@lru_cache()
def get_settings() -> Settings:
    return Settings()
