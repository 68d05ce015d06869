"""
Rekey - signing-key rotation with alias continuity and bounded rollback.

This package replaces an identity's signing keypair while keeping its alias and
payment address, records every attempt as a permanent rotation ticket, and
allows a completed rotation to be undone within a deprecation window.
"""

__version__ = "1.0.0"

# Core protocol
from .rotation import KeyRotationService, RotationAction, StartResult
from .models import (
    IdentityRecord,
    RotationTicket,
    RotationStatus,
    PriorStateSnapshot,
    AttestationRefs,
    RotationPlan,
    FieldPlan,
    Strategy,
)
from .config import RotationSettings
from .errors import RotationError

# Backends
from .identity import MemoryIdentityStore, RedisIdentityStore
from .ledger import MemoryRotationLedger, RedisRotationLedger
from .mutator import MemoryIdentityMutator, RedisIdentityMutator


# HTTP layer (lazy imports)
def __getattr__(name):
    """Lazy loading of the HTTP layer."""
    if name in ("create_app", "build_memory_service", "build_redis_service"):
        from . import server

        return getattr(server, name)
    elif name in ("BearerAuthenticator", "TokenIssuer"):
        from . import auth

        return getattr(auth, name)
    raise AttributeError(f"module 'rekey' has no attribute '{name}'")


__all__ = [
    "__version__",
    # Core
    "KeyRotationService",
    "RotationAction",
    "StartResult",
    "RotationSettings",
    "RotationError",
    # Model
    "IdentityRecord",
    "RotationTicket",
    "RotationStatus",
    "PriorStateSnapshot",
    "AttestationRefs",
    "RotationPlan",
    "FieldPlan",
    "Strategy",
    # Backends
    "MemoryIdentityStore",
    "MemoryRotationLedger",
    "MemoryIdentityMutator",
    "RedisIdentityStore",
    "RedisRotationLedger",
    "RedisIdentityMutator",
    # HTTP (lazy loaded)
    "create_app",
    "build_memory_service",
    "build_redis_service",
    "BearerAuthenticator",
    "TokenIssuer",
]
