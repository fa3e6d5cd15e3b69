"""
Workers Package
Background workers for dead-letter replay
"""
from voipcore.workers.dead_letter_worker import DeadLetterSweeper, DeadLetterWorker

__all__ = [
    "DeadLetterSweeper",
    "DeadLetterWorker",
]
