"""Package registry mirroring module.

This module handles:
- Cloning and incrementally updating the crates.io index (git)
- Validating index content before it is committed
- Downloading and verifying crate archives
- Narrowing the archive set to a vendored project's packages
"""

from rustmirror.registry.archives import (
    ArchiveSyncer,
    ScopeManifest,
    crate_path,
    crate_prefix,
    crate_url,
)
from rustmirror.registry.index import (
    IndexFetchError,
    IndexInconsistency,
    IndexRecord,
    IndexSnapshot,
    IndexSyncError,
    IndexSyncer,
    index_path,
)
from rustmirror.registry.models import SyncState
from rustmirror.registry.scope import ScopeParseError, resolve_scope

__all__ = [
    # Models
    "SyncState",
    # Index
    "IndexFetchError",
    "IndexInconsistency",
    "IndexRecord",
    "IndexSnapshot",
    "IndexSyncError",
    "IndexSyncer",
    "index_path",
    # Archives
    "ArchiveSyncer",
    "ScopeManifest",
    "crate_path",
    "crate_prefix",
    "crate_url",
    # Scope
    "ScopeParseError",
    "resolve_scope",
]
