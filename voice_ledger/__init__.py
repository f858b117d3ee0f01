"""
Voice Ledger - Source Package

Offline-first expense capture: a voice or text note becomes a structured,
categorized ledger entry that appears exactly once, even when capture
happens offline, parsing is probabilistic and retries occur.

DESIGN PRINCIPLES:
1. The client expense id is the idempotency key from capture to ledger row
2. AI suggests, rules back it up, confidence decides auto-save vs review
3. Every failure degrades to a retryable or user-visible state
4. One writer owns all mutable state
5. Storage and API layers are swappable
"""

__version__ = "1.0.0"
__author__ = "Voice Ledger Team"
