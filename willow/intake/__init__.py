from .clients import CareCircleClient, ConversationClient
from .controller import GenerationState, IntakeSession
from .snapshot import merge_snapshot
from .stream_reader import read_stream
from .sync import FinalizeResult, SessionSynchronizer

__all__ = [
    "CareCircleClient",
    "ConversationClient",
    "FinalizeResult",
    "GenerationState",
    "IntakeSession",
    "SessionSynchronizer",
    "merge_snapshot",
    "read_stream",
]
