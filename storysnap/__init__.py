from .archive import create_lz4_tar, extract_lz4_tar
from .config import NodeLayout, Settings, load_settings
from .errors import (
    DependencyError,
    FilesystemError,
    IntegrityError,
    LockError,
    NetworkError,
    PipelineError,
    SchemaError,
    SnapshotError,
)
from .models import Asset, PruningMode, SnapshotDescriptor
from .pipeline import ApplyPipeline, PipelineState, Session
from .resolver import resolve_for_mode, resolve_for_modes

__all__ = [
    "ApplyPipeline",
    "Asset",
    "DependencyError",
    "FilesystemError",
    "IntegrityError",
    "LockError",
    "NetworkError",
    "NodeLayout",
    "PipelineError",
    "PipelineState",
    "PruningMode",
    "SchemaError",
    "Session",
    "Settings",
    "SnapshotDescriptor",
    "SnapshotError",
    "create_lz4_tar",
    "extract_lz4_tar",
    "load_settings",
    "resolve_for_mode",
    "resolve_for_modes",
]
