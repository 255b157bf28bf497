from __future__ import annotations

import logging
import re
from typing import Callable, Optional, Protocol

from devpet.dispatch import DispatchRegistry, Handler
from devpet.protocol import Command, Malformed, decode, encode

logger = logging.getLogger("devpet.channel")
peer_logger = logging.getLogger("devpet.peer")

LOG_PAYLOAD_RE = re.compile(r"^\[([A-Z]+)] (.*)$")

_PEER_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "LOG": logging.INFO,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


class LineTransport(Protocol):
    """Bidirectional line-framed byte stream to the peer."""

    def write(self, data: bytes) -> None: ...

    def set_line_handler(self, handler: Callable[[bytes], None]) -> None: ...

    def set_error_handler(self, handler: Callable[[BaseException], None]) -> None: ...

    def close(self) -> None: ...


class CommandChannel:
    """Line-command channel to the pet.

    Inbound lines are decoded and routed through a DispatchRegistry; outbound
    commands are encoded and written fire-and-forget. Malformed input, handler
    failures and transport errors are logged and never propagate to the caller.
    """

    def __init__(
        self,
        transport: LineTransport,
        *,
        registry: Optional[DispatchRegistry] = None,
        debug: bool = False,
        register_builtins: bool = True,
    ) -> None:
        self.transport = transport
        self.registry = registry if registry is not None else DispatchRegistry()
        self.debug = debug
        self.malformed_count = 0
        self._degraded = False

        if register_builtins:
            self.registry.register("ping", handle_ping)
            self.registry.register("log", handle_log)

        transport.set_line_handler(self.handle_line)
        transport.set_error_handler(self.handle_error)

    @property
    def degraded(self) -> bool:
        return self._degraded

    def on(self, name: str) -> Callable[[Handler], Handler]:
        def _decorator(handler: Handler) -> Handler:
            self.registry.register(name, handler)
            return handler

        return _decorator

    def send(self, name: str, payload: str = "") -> bool:
        """Write one command to the peer. Returns False if the write failed."""

        line = encode(name, payload)
        try:
            self.transport.write(line)
        except OSError as exc:
            self._degraded = True
            logger.error("send failed command=%s: %r", name, exc)
            return False

        if self.debug:
            logger.info(
                "outgoing %s %s",
                name,
                payload,
                extra={"fields": {"direction": "out", "command": name, "payload": payload}},
            )
        return True

    def handle_line(self, line: str | bytes) -> None:
        result = decode(line)
        if isinstance(result, Malformed):
            self.malformed_count += 1
            logger.warning("invalid command: [%s]", result.raw_text)
            return

        self._dispatch(result)

    def handle_error(self, exc: BaseException) -> None:
        self._degraded = True
        logger.error("transport error: %r", exc)

    def close(self) -> None:
        try:
            self.transport.close()
        except OSError as exc:
            logger.warning("transport close failed: %r", exc)

    def _dispatch(self, command: Command) -> None:
        if self.debug:
            logger.info(
                "incoming %s %s",
                command.name,
                command.payload,
                extra={"fields": {"direction": "in", "command": command.name, "payload": command.payload}},
            )

        handler = self.registry.resolve(command.name)
        if handler is None:
            logger.debug("ignoring unhandled command %s", command.name)
            return

        try:
            handler(self, command.payload)
        except Exception:
            logger.exception("handler for %s failed", command.name)


def handle_ping(channel: CommandChannel, payload: str) -> None:
    channel.send("ping")


def handle_log(channel: CommandChannel, payload: str) -> None:
    match = LOG_PAYLOAD_RE.match(payload)
    if match is None:
        return
    level = _PEER_LEVELS.get(match.group(1), logging.INFO)
    peer_logger.log(level, match.group(2))
