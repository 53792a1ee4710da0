"""HTTP client for the sudO command bridge.

The bridge is a small service on the local network (typically Termux on the
same phone) that runs shell commands and reports whether it is alive:

    POST {endpoint}/exec    {"command": "..."}  ->  {"output"?: str, "error"?: str}
    GET  {endpoint}/status  any 2xx means reachable

execute() never raises. Every failure comes back as an ExecutionResult with a
FaultKind, so the tool dispatcher can always answer the model.

A background poll keeps ConnectivityState fresh. When the last poll said the
bridge is down, execute() returns BRIDGE_UNREACHABLE immediately instead of
waiting out the 60 second exec timeout.
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

import aiohttp

from config import EXEC_TIMEOUT, POLL_INTERVAL, STATUS_TIMEOUT

logger = logging.getLogger(__name__)

BRIDGE_OFFLINE_MESSAGE = "ERROR: BRIDGE_SIGNAL_LOST. Ensure 'sudO bridge' is active."
NO_OUTPUT_MESSAGE = "SYSTEM: NO_OUTPUT"

_HISTORY_SIZE = 200


class FaultKind(Enum):
    """Why a command did not produce a clean result."""
    NONE = "none"
    HTTP = "http"                       # bridge answered with a non-2xx status
    TIMEOUT = "timeout"                 # no answer within the exec timeout
    TRANSPORT = "transport"             # DNS, refused connection, bad JSON
    COMMAND = "command"                 # bridge ran it and reported an error
    BRIDGE_UNREACHABLE = "unreachable"  # last health poll failed, not attempted


@dataclass
class ExecutionRequest:
    command: str
    description: Optional[str] = None


@dataclass
class ExecutionResult:
    """Outcome of one /exec call."""
    command: str
    output: str = ""
    error: bool = False
    fault: FaultKind = FaultKind.NONE
    status: Optional[int] = None
    finished_at: float = field(default_factory=time.time)

    @property
    def display_text(self) -> str:
        """Short text for the terminal view and the model's tool response."""
        if self.fault == FaultKind.BRIDGE_UNREACHABLE:
            return BRIDGE_OFFLINE_MESSAGE
        if self.fault == FaultKind.TIMEOUT:
            return "CRITICAL: EXECUTION_TIMEOUT"
        if self.fault == FaultKind.HTTP:
            return f"CRITICAL: HTTP_FAULT_{self.status}"
        if self.fault == FaultKind.TRANSPORT:
            return "CRITICAL: NETWORK_PROTOCOL_FAULT"
        return self.output or NO_OUTPUT_MESSAGE

    @property
    def notification(self) -> Optional[str]:
        """Status message for the user, or None when the command went through."""
        if self.fault == FaultKind.BRIDGE_UNREACHABLE:
            return "TERMUX_LINK_OFFLINE"
        if self.fault == FaultKind.TIMEOUT:
            return "EXECUTION_TIMEOUT"
        if self.fault == FaultKind.HTTP:
            return f"HTTP_FAULT_{self.status}"
        if self.fault == FaultKind.TRANSPORT:
            return "NETWORK_PROTOCOL_FAULT"
        return None


class ConnectivityState:
    """Latest health poll result. Written only by the poll loop; last poll wins."""

    def __init__(self, reachable: bool = False):
        self.reachable = reachable
        self.last_checked: Optional[float] = None

    def update(self, reachable: bool):
        changed = reachable != self.reachable
        self.reachable = reachable
        self.last_checked = time.time()
        return changed


class BridgeClient:
    """Runs commands on the bridge and tracks whether it is reachable.

    Usage:
        async with BridgeClient("http://localhost:8080") as bridge:
            bridge.start_polling()
            result = await bridge.execute("ls -la")
    """

    def __init__(self, endpoint: str, connectivity: Optional[ConnectivityState] = None,
                 exec_timeout: float = EXEC_TIMEOUT, status_timeout: float = STATUS_TIMEOUT,
                 poll_interval: float = POLL_INTERVAL):
        self.endpoint = endpoint.rstrip("/")
        self.connectivity = connectivity if connectivity is not None else ConnectivityState()
        self.exec_timeout = exec_timeout
        self.status_timeout = status_timeout
        self.poll_interval = poll_interval
        self.history: deque[ExecutionResult] = deque(maxlen=_HISTORY_SIZE)
        self._session: Optional[aiohttp.ClientSession] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._result_callbacks: list[Callable] = []
        self._connectivity_callbacks: list[Callable] = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.close()

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    # -- Observers --

    def on_result(self, callback: Callable[[ExecutionResult], None]):
        self._result_callbacks.append(callback)

    def on_connectivity(self, callback: Callable[[bool], None]):
        self._connectivity_callbacks.append(callback)

    def _notify(self, callbacks, *args):
        for cb in callbacks:
            try:
                cb(*args)
            except Exception as e:
                logger.error("Bridge callback error: %s", e)

    # -- Exec --

    async def execute(self, command: str, description: Optional[str] = None) -> ExecutionResult:
        """Run a command on the bridge. Never raises; faults come back as values."""
        request = ExecutionRequest(command=command, description=description)
        if not request.command.strip():
            return ExecutionResult(command=request.command)

        if not self.connectivity.reachable:
            logger.warning("Bridge offline, not sending: %s", request.command)
            result = ExecutionResult(command=request.command, output=BRIDGE_OFFLINE_MESSAGE,
                                     error=True, fault=FaultKind.BRIDGE_UNREACHABLE)
        else:
            result = await self._post_exec(request)

        self.history.append(result)
        self._notify(self._result_callbacks, result)
        return result

    async def _post_exec(self, request: ExecutionRequest) -> ExecutionResult:
        url = f"{self.endpoint}/exec"
        timeout = aiohttp.ClientTimeout(total=self.exec_timeout)
        logger.info("Bridge exec: %s%s", request.command,
                    f" ({request.description})" if request.description else "")
        try:
            session = self._get_session()
            async with session.post(url, json={"command": request.command}, timeout=timeout) as resp:
                if resp.status < 200 or resp.status >= 300:
                    logger.warning("Bridge returned HTTP %d for %s", resp.status, request.command)
                    return ExecutionResult(command=request.command, error=True,
                                           fault=FaultKind.HTTP, status=resp.status)
                data = await resp.json(content_type=None)
        except asyncio.TimeoutError:
            logger.warning("Bridge exec timed out after %.0fs: %s", self.exec_timeout, request.command)
            return ExecutionResult(command=request.command, error=True, fault=FaultKind.TIMEOUT)
        except (aiohttp.ClientError, ValueError) as e:
            logger.warning("Bridge transport fault: %s", e)
            return ExecutionResult(command=request.command, error=True, fault=FaultKind.TRANSPORT)

        if not isinstance(data, dict):
            data = {}
        output = data.get("output") or ""
        error = data.get("error") or ""
        if error:
            # error wins even when output is present
            return ExecutionResult(command=request.command, output=output or str(error),
                                   error=True, fault=FaultKind.COMMAND, status=resp.status)
        return ExecutionResult(command=request.command, output=output, status=resp.status)

    # -- Health --

    async def poll_health(self) -> bool:
        """Check /status once and update connectivity. Any fault means offline."""
        url = f"{self.endpoint}/status"
        timeout = aiohttp.ClientTimeout(total=self.status_timeout)
        try:
            session = self._get_session()
            async with session.get(url, timeout=timeout) as resp:
                reachable = 200 <= resp.status < 300
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.debug("Bridge health check failed: %s", e)
            reachable = False

        if self.connectivity.update(reachable):
            logger.info("Bridge %s", "online" if reachable else "offline")
            self._notify(self._connectivity_callbacks, reachable)
        return reachable

    async def _poll_loop(self):
        while True:
            await self.poll_health()
            await asyncio.sleep(self.poll_interval)

    def start_polling(self) -> asyncio.Task:
        """Poll /status now and then every poll_interval seconds."""
        if self._poll_task is None or self._poll_task.done():
            self._poll_task = asyncio.create_task(self._poll_loop(), name="bridge-health")
        return self._poll_task

    async def stop_polling(self):
        task, self._poll_task = self._poll_task, None
        if task and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    def clear_history(self):
        self.history.clear()

    async def close(self):
        await self.stop_polling()
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
