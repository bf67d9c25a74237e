"""Utility modules for kaiarelay."""

from kaiarelay.utils.locks import SenderLock, get_sender_lock

__all__ = ["SenderLock", "get_sender_lock"]
