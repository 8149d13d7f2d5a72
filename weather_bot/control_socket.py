from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable

LOGGER = logging.getLogger(__name__)

OnCommand = Callable[[str], Awaitable[dict[str, Any]]]

COMMANDS = frozenset({"pause", "resume", "stop", "emergency_stop", "status"})


class ControlSocket:
    """Operator control surface: newline-delimited JSON over TCP.

    Clients send ``{"type": "command", "command": "pause"}`` and receive a
    ``command_ack``. Status snapshots pushed by the engine are broadcast to
    every connected client.
    """

    def __init__(
        self,
        port: int = 9130,
        host: str = "127.0.0.1",
        on_command: OnCommand | None = None,
    ) -> None:
        self._port = port
        self._host = host
        self._on_command = on_command
        self._server: asyncio.AbstractServer | None = None
        self._clients: list[asyncio.StreamWriter] = []

    @property
    def client_count(self) -> int:
        return len(self._clients)

    @property
    def port(self) -> int:
        if self._server is not None and self._server.sockets:
            return int(self._server.sockets[0].getsockname()[1])
        return self._port

    async def start(self) -> None:
        self._server = await asyncio.start_server(self._handle_client, self._host, self._port)
        LOGGER.info("control socket listening on %s:%d", self._host, self.port)

    async def stop(self) -> None:
        for writer in list(self._clients):
            await _close_writer(writer)
        self._clients.clear()
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

    async def push_state(self, state: dict[str, Any]) -> None:
        data = (json.dumps(state, default=str) + "\n").encode("utf-8")
        dead: list[asyncio.StreamWriter] = []
        for writer in self._clients:
            try:
                writer.write(data)
                await writer.drain()
            except (ConnectionError, RuntimeError):
                dead.append(writer)
        for writer in dead:
            self._clients.remove(writer)
            await _close_writer(writer)

    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._clients.append(writer)
        peer = writer.get_extra_info("peername")
        LOGGER.info("control socket client connected: %s", peer)
        try:
            while True:
                line = await reader.readline()
                if not line:
                    break
                try:
                    msg = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if not isinstance(msg, dict):
                    continue
                resp = await self._handle_message(msg)
                if resp is not None:
                    writer.write((json.dumps(resp, default=str) + "\n").encode("utf-8"))
                    await writer.drain()
        except (ConnectionResetError, BrokenPipeError):
            pass
        finally:
            if writer in self._clients:
                self._clients.remove(writer)
            await _close_writer(writer)
            LOGGER.info("control socket client disconnected: %s", peer)

    async def _handle_message(self, msg: dict[str, Any]) -> dict[str, Any] | None:
        if msg.get("type", "") != "command":
            return None

        command = str(msg.get("command", "")).strip().lower()
        if command not in COMMANDS:
            return {"type": "command_ack", "ok": False, "command": command, "error": "unknown command"}
        if self._on_command is None:
            return {"type": "command_ack", "ok": False, "command": command, "error": "no handler"}
        try:
            result = await self._on_command(command)
        except Exception as exc:
            LOGGER.exception("control command %s failed", command)
            return {"type": "command_ack", "ok": False, "command": command, "error": str(exc)}
        return {"type": "command_ack", "command": command, **result}


async def _close_writer(writer: asyncio.StreamWriter) -> None:
    try:
        writer.close()
        await writer.wait_closed()
    except (ConnectionError, RuntimeError):
        pass
