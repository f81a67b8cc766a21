"""Chain access - contract calls, multicall batching and event scanning."""

from trove_monitor.chain.client import (
    CallResult,
    ChainReader,
    ChainReaderError,
    ContractCall,
    RPCError,
)
from trove_monitor.chain.events import (
    Decoded,
    EventLogScanner,
    LogEntry,
    Unrecognized,
    decode_log,
)

__all__ = [
    "CallResult",
    "ChainReader",
    "ChainReaderError",
    "ContractCall",
    "Decoded",
    "EventLogScanner",
    "LogEntry",
    "RPCError",
    "Unrecognized",
    "decode_log",
]
