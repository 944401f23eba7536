"""
Configuration data models for cairn.

These models define the structure of .cairn.json and ~/.config/cairn/config.json
files, with validation and type safety via Pydantic.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class SyncConfig(BaseModel):
    """
    Distribution branch and push/retry settings.

    Branch and remote names are restricted to safe characters since they are
    passed straight to git.
    """
    branch: str = Field(
        default="cairn-sync",
        min_length=1,
        max_length=255,
        pattern=r"^[a-zA-Z0-9._/-]+$",
        description="Dedicated branch used to distribute entity state"
    )
    remote: str = Field(
        default="origin",
        min_length=1,
        max_length=255,
        pattern=r"^[a-zA-Z0-9._-]+$",
        description="Remote the sync branch is fetched from and pushed to"
    )
    max_attempts: int = Field(
        default=5,
        ge=1,
        description="Fetch/merge/push attempts before a sync fails loudly"
    )
    base_delay_seconds: float = Field(
        default=0.5,
        ge=0.0,
        description="Backoff delay before the second attempt (doubles per attempt)"
    )
    max_delay_seconds: float = Field(
        default=30.0,
        ge=0.0,
        description="Upper bound on a single backoff delay"
    )
    jitter: float = Field(
        default=0.25,
        ge=0.0,
        le=1.0,
        description="Relative random jitter applied to each backoff delay"
    )
    git_timeout_seconds: int = Field(
        default=60,
        ge=1,
        description="Timeout for a single git subprocess"
    )


class StoreConfig(BaseModel):
    """Local entity store settings."""
    temp_max_age_seconds: int = Field(
        default=3600,
        ge=0,
        description="Abandoned temp files older than this are removed on open"
    )
    fsync: bool = Field(
        default=True,
        description="Flush entity files to durable storage before renaming"
    )


class IdsConfig(BaseModel):
    """ID generation settings."""
    length: int = Field(
        default=10,
        ge=4,
        le=32,
        description="Number of random base36 characters after the type prefix"
    )
    max_attempts: int = Field(
        default=5,
        ge=1,
        description="Collision retries before create fails"
    )


class MergeConfig(BaseModel):
    """Merge engine settings."""
    three_way_union: bool = Field(
        default=False,
        description=(
            "Use the common ancestor for set-like fields so removals propagate. "
            "When off, unions are additive-only."
        )
    )


class AtticConfig(BaseModel):
    """Attic retention settings."""
    retention_days: Optional[int] = Field(
        default=None,
        ge=1,
        description="Prune attic entries older than this (None keeps everything)"
    )


class SweepConfig(BaseModel):
    """Integrity sweep settings."""
    grace_hours: float = Field(
        default=24.0,
        ge=0.0,
        description=(
            "A dangling reference is only relocated once the referencing entity "
            "is older than this, giving the target time to sync in"
        )
    )


class CairnConfig(BaseModel):
    """
    Top-level cairn configuration.

    Example:
        >>> config = CairnConfig()
        >>> config.sync.branch
        'cairn-sync'
    """
    model_config = ConfigDict(extra="ignore")

    node_id: Optional[str] = Field(
        default=None,
        description="Stable identifier for this replica (generated when unset)"
    )
    data_dir: str = Field(
        default=".cairn/data",
        description="Local working copy of the sync branch, relative to the project"
    )
    sync: SyncConfig = Field(default_factory=SyncConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    ids: IdsConfig = Field(default_factory=IdsConfig)
    merge: MergeConfig = Field(default_factory=MergeConfig)
    attic: AtticConfig = Field(default_factory=AtticConfig)
    sweep: SweepConfig = Field(default_factory=SweepConfig)
