from .state_store import StateStore, UnitOfWork, new_id, now_iso, parse_iso

__all__ = ["StateStore", "UnitOfWork", "new_id", "now_iso", "parse_iso"]
