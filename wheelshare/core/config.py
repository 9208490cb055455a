from enum import Enum
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class StorageType(str, Enum):
    MEMORY = "memory"
    TABLE = "table"
    DOCUMENT = "document"


_STORAGE_ALIASES = {
    "memory": StorageType.MEMORY,
    "mem": StorageType.MEMORY,
    "inmemory": StorageType.MEMORY,
    "in-memory": StorageType.MEMORY,
    "table": StorageType.TABLE,
    "tables": StorageType.TABLE,
    "tablestorage": StorageType.TABLE,
    "table-storage": StorageType.TABLE,
    "document": StorageType.DOCUMENT,
    "documents": StorageType.DOCUMENT,
    "doc": StorageType.DOCUMENT,
    "cosmos": StorageType.DOCUMENT,
    "cosmosdb": StorageType.DOCUMENT,
    "cosmos-db": StorageType.DOCUMENT,
}


def parse_storage_type(value: str) -> StorageType:
    """Map a STORAGE_TYPE value (case-insensitive, common aliases) to a StorageType."""
    try:
        return _STORAGE_ALIASES[value.strip().lower()]
    except KeyError:
        raise ValueError(
            f"Invalid storage type: {value}. Valid options: memory, table, document"
        ) from None


class Settings(BaseSettings):
    storage_type: StorageType = Field(default=StorageType.MEMORY, alias="STORAGE_TYPE")
    table_database_url: str = Field(default="", alias="TABLE_DATABASE_URL")
    document_database_url: str = Field(default="", alias="DOCUMENT_DATABASE_URL")
    storage_timeout_seconds: float = Field(default=10.0, alias="STORAGE_TIMEOUT_SECONDS")
    increment_max_attempts: int = Field(default=25, alias="INCREMENT_MAX_ATTEMPTS")

    auth_client_id: str = Field(default="", alias="AUTH_CLIENT_ID")
    auth_tenant_id: str = Field(default="common", alias="AUTH_TENANT_ID")
    auth_issuer_prefix: str = Field(
        default="https://login.microsoftonline.com/", alias="AUTH_ISSUER_PREFIX"
    )
    auth_admin_role: str = Field(default="admin.write", alias="AUTH_ADMIN_ROLE")
    auth_jwks_url: str = Field(default="", alias="AUTH_JWKS_URL")

    base_url: str = Field(default="http://localhost:8000", alias="BASE_URL")
    allowed_origins: str = Field(default="http://localhost:3000", alias="ALLOWED_ORIGINS")
    public_access_rate_limit: int = Field(default=60, alias="PUBLIC_ACCESS_RATE_LIMIT")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    model_config = SettingsConfigDict(env_file=".env", extra="ignore", populate_by_name=True)

    @field_validator("storage_type", mode="before")
    @classmethod
    def _parse_storage_type(cls, value):
        if isinstance(value, str):
            return parse_storage_type(value)
        return value

    @field_validator("base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @model_validator(mode="after")
    def _check_backend_url(self) -> "Settings":
        if self.storage_type == StorageType.TABLE and not self.table_database_url:
            raise ValueError("STORAGE_TYPE=table requires TABLE_DATABASE_URL")
        if self.storage_type == StorageType.DOCUMENT and not self.document_database_url:
            raise ValueError("STORAGE_TYPE=document requires DOCUMENT_DATABASE_URL")
        return self

    @property
    def allowed_origins_list(self) -> List[str]:
        return [origin.strip() for origin in self.allowed_origins.split(",") if origin.strip()]

    @property
    def jwks_url(self) -> str:
        if self.auth_jwks_url:
            return self.auth_jwks_url
        return f"https://login.microsoftonline.com/{self.auth_tenant_id}/discovery/v2.0/keys"

    @property
    def storage_url(self) -> Optional[str]:
        if self.storage_type == StorageType.TABLE:
            return self.table_database_url
        if self.storage_type == StorageType.DOCUMENT:
            return self.document_database_url
        return None

    @property
    def storage_display_name(self) -> str:
        return {
            StorageType.MEMORY: "In-Memory (development)",
            StorageType.TABLE: "Partitioned table store",
            StorageType.DOCUMENT: "Document store",
        }[self.storage_type]


@lru_cache
def get_settings() -> Settings:
    return Settings()
