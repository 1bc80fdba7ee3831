from .memory_store import InMemoryRecoveryStore, RecoveryStore

__all__ = ["InMemoryRecoveryStore", "RecoveryStore"]
