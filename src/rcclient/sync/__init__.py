"""Sync engine and server reconciliation."""

from .engine import CycleAborted, SyncEngine
from .reconcile import ACCEPT_SERVER, KEEP_LOCAL

__all__ = ["SyncEngine", "CycleAborted", "KEEP_LOCAL", "ACCEPT_SERVER"]
