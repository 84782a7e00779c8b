"""Version log configuration."""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Version log settings loaded from environment variables.

    Settings are loaded in this priority order (highest to lowest):
    1. Environment variables (``VERSIONLOG_`` prefix)
    2. .env file (for local development)
    3. Default values

    Column and table naming settings are read when a versioned class is
    declared, so they must be set before the models are imported.
    """

    model_config = SettingsConfigDict(
        env_prefix="VERSIONLOG_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # =========================================================================
    # Log table layout
    # =========================================================================
    seq_column: str = Field(
        default="seq",
        description="Name of the autoincrement ordering column in every log table",
    )
    timestamp_column: str = Field(
        default="timestamp",
        description="Name of the append-time column in every log table",
    )
    log_table_prefix: str = Field(
        default="shadow_",
        description="Prefix for log tables of entities that don't name one",
    )

    # =========================================================================
    # Reads
    # =========================================================================
    as_of_info_key: str = Field(
        default="versionlog_as_of",
        description="Session.info key read by SessionInfoTimeProvider",
    )
    populate_existing: bool = Field(
        default=True,
        description="Overwrite identity-map state with historical rows on as-of reads",
    )

    # =========================================================================
    # HTTP integration
    # =========================================================================
    as_of_header: str = "X-As-Of"
    as_of_query_param: str = "as_of"


settings = Settings()
