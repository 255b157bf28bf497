from .channel import CommandChannel, LineTransport
from .dispatch import DispatchRegistry, DuplicateHandlerError
from .github_state import DeltaEvent, DiffState, GithubState
from .protocol import Command, CommandNameError, Malformed, decode, encode
from .state_store import StateFileError, load_state_record, save_state_record

__all__ = [
    "Command",
    "CommandChannel",
    "CommandNameError",
    "DeltaEvent",
    "DiffState",
    "DispatchRegistry",
    "DuplicateHandlerError",
    "GithubState",
    "LineTransport",
    "Malformed",
    "StateFileError",
    "decode",
    "encode",
    "load_state_record",
    "save_state_record",
]
