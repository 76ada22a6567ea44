"""stdio Transport for MCP Server.

Newline-delimited JSON-RPC over stdin and stdout. The whole connection is
a single session whose notifications are written inline with responses.
"""

import asyncio
import json
import logging
import sys
from typing import Any, Dict, Optional, Set, TextIO

from .config import ServerConfig
from .server import ErrorCode, JsonRpcError, McpCore


logger = logging.getLogger(__name__)

# Longest NDJSON line accepted from stdin
STDIO_LINE_LIMIT = 1024 * 1024


class StdioTransport:
    """stdio transport for MCP server.

    Reads JSON-RPC messages from stdin (NDJSON format), processes each one
    in its own task through McpCore, and writes responses to stdout. The
    whole connection is one session; its notifications are written to
    stdout as they are sent.
    """

    def __init__(
        self,
        core: McpCore,
        stdin: Optional[TextIO] = None,
        stdout: Optional[TextIO] = None
    ):
        self.core = core
        self._stdin = stdin or sys.stdin
        self._stdout = stdout or sys.stdout
        self._running = False
        self._tasks: Set[asyncio.Task] = set()
        self.session = core.open_session()
        self.session.channel.subscribe(self._write_notification)

    async def run(self, reader: Optional[asyncio.StreamReader] = None) -> None:
        """Run the stdio transport loop until EOF or stop().

        Args:
            reader: Stream to read from; stdin is connected as a pipe if omitted
        """
        self._running = True
        logger.info(f"stdio session {self.session.session_id} started")

        if reader is None:
            loop = asyncio.get_running_loop()
            reader = asyncio.StreamReader(limit=STDIO_LINE_LIMIT)
            protocol = asyncio.StreamReaderProtocol(reader)
            await loop.connect_read_pipe(lambda: protocol, self._stdin)

        try:
            while self._running:
                try:
                    line = await reader.readline()
                except ValueError as e:
                    # Over the reader's limit; the line is discarded
                    self._write_parse_error(f"Line too long: {e}")
                    continue
                if not line:
                    # EOF
                    break

                task = asyncio.create_task(self._handle_line(line))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)

        except asyncio.CancelledError:
            logger.info("stdio loop cancelled")
            raise
        finally:
            self._running = False
            # Let tasks for already-read lines register before the session goes away
            await asyncio.sleep(0)
            self.core.close_session(self.session.session_id, "stdin closed")
            if self._tasks:
                await asyncio.gather(*self._tasks, return_exceptions=True)
            logger.info(f"stdio session {self.session.session_id} ended")

    async def _handle_line(self, raw: bytes) -> None:
        """Decode one NDJSON line and answer it."""
        try:
            line = raw.decode('utf-8').strip()
            if not line:
                return
            message = json.loads(line)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            self._write_parse_error(f"Parse error: {e}")
            return

        response = await self.core.handle(message, self.session.session_id)
        if response is not None:
            self._write(response)

    def _write_parse_error(self, message: str) -> None:
        self._write(JsonRpcError(ErrorCode.PARSE_ERROR.value, message).to_response(None))

    async def _write_notification(self, event_id: int, message: Dict[str, Any]) -> None:
        # Errors propagate so the channel reports the delivery as failed
        self._write_line(message)

    def _write(self, response: Dict[str, Any]) -> None:
        """Write a reply; a broken stdout is logged, not raised."""
        try:
            self._write_line(response)
        except (OSError, ValueError) as e:
            logger.error(f"Could not write reply to stdout: {e}")

    def _write_line(self, payload: Dict[str, Any]) -> None:
        line = json.dumps(payload, separators=(',', ':'))
        self._stdout.write(line + "\n")
        self._stdout.flush()

    def stop(self) -> None:
        """Stop reading after the current line."""
        self._running = False


async def run_stdio_server(config: Optional[ServerConfig] = None) -> None:
    """Run MCP server with stdio transport."""
    core = McpCore(config)
    transport = StdioTransport(core)

    try:
        await transport.run()
    finally:
        core.cleanup()
