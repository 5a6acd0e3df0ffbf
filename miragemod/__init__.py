from .dispatcher import FigmentDispatcher, StartupError
from .kilovolt import EmptyKeyError, KilovoltClient, KilovoltError
from .ledger import FigmentEntry, FigmentLedger

__all__ = [
    "EmptyKeyError",
    "FigmentDispatcher",
    "FigmentEntry",
    "FigmentLedger",
    "KilovoltClient",
    "KilovoltError",
    "StartupError",
]
