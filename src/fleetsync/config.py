from typing import Dict, List, Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite:///./fleetsync.db"

    # Upstream (Rise-X account server + Diana API)
    risex_api_base_url: str = "https://api.idiana.io"
    risex_account_base_url: str = "https://account.rise-x.io"
    risex_client_id: str = "52872a23-d419-4951-a8dd-9a5196d2225b"
    http_timeout_seconds: float = 30.0

    # base64 or hex; empty derives a development-only key
    token_encryption_key: str = ""

    sync_fetch_concurrency: int = 4
    sync_run_timeout_seconds: float = 900.0
    sync_cooldown_minutes: int = 5
    reconcile_interval_minutes: int = 15

    historic_chunk_months: int = 2
    # Bulk extraction ingests once every window is fetched
    historic_run_timeout_seconds: float = 3600.0
    historic_retry_delay_seconds: float = 2.0
    historic_default_years: int = 3

    # Workflow (flow origin) ids whose work items are mirrored
    flow_origin_ids: List[str] = [
        "c87625d0-74b4-4bef-8ab2-eb2cd65fa833",
        "ce374b64-dd61-4892-ae40-fd24e625be79",
        "7a3ded1b-aa86-476a-95f7-dda9822b9518",
        "f7ee94cf-b2e7-4321-9a21-2a179b3830ee",
        "106b26fc-b1f1-4ea5-9e95-5f7bd81ee181",
        "3490a6ee-7fa6-4cc9-adee-905559229fb5",
    ]

    # Asset registry (thing type) id -> display name
    asset_registries: Dict[str, str] = {
        "6ffaffbd-c9ac-42a6-ab19-8fa7a30752ca": "RAN Assets",
        "e7f07ad3-8dda-4f7b-b293-7de922cf3abe": "Commercial Vessels",
        "d71c7b39-076d-4ebd-8781-fd592c94499b": "SAAM Towage",
        "a33e33f1-0de0-86ea-ef5d-c3ebe74b960e": "Royal Navy",
        "811c11df-ebce-64c8-cd3b-a1c9c52974ec": "USN Assets",
        "97325246-f7f5-4811-b079-5f60d77d8956": "RNZN Assets",
    }

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
