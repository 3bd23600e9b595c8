"""Agent bridge client: hands a formatted message to the local agent.

The bridge is an external executable invoked as::

    <agent_command> --channel <channel> --endpoint <endpoint> --json --content <payload>

Exit status 0 means the message was accepted. On failure the bridge may
print a structured rejection on stdout or stderr::

    {"ok": false, "error": {"code": "RATE_LIMIT", "message": "slow down"}}

A structured rejection is final and its message is meant for the user.
Anything else (crash, garbage output, timeout) is retried once.
"""

import asyncio
import json
import logging
from typing import Optional, Sequence

logger = logging.getLogger("telegate.bridge")

RETRY_DELAY = 2.0


class AgentRejection(Exception):
    """The agent bridge refused the message with a structured error."""

    def __init__(self, code: str, message: str):
        super().__init__(f"{code}: {message}")
        self.code = code
        self.message = message


class AgentBridgeError(RuntimeError):
    """The agent bridge failed without a structured error."""

    def __init__(self, message: str, returncode: Optional[int] = None, output: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.output = output


def parse_rejection(*outputs: str) -> Optional[AgentRejection]:
    """Find a structured ``{"ok": false, "error": {...}}`` in bridge output."""
    for output in outputs:
        if not output:
            continue
        candidates = [output.strip()] + [ln.strip() for ln in output.splitlines()]
        for candidate in candidates:
            if not candidate.startswith("{"):
                continue
            try:
                data = json.loads(candidate)
            except json.JSONDecodeError:
                continue
            if not isinstance(data, dict) or data.get("ok") is not False:
                continue
            error = data.get("error")
            if isinstance(error, dict) and error.get("message"):
                return AgentRejection(str(error.get("code") or "UNKNOWN"), str(error["message"]))
    return None


class AgentBridge:
    """Invokes the agent bridge executable as an async subprocess."""

    def __init__(
        self,
        command: str,
        channel: str = "telegram",
        timeout: float = 60.0,
        extra_args: Sequence[str] = (),
        retry_delay: float = RETRY_DELAY,
    ):
        self.command = command
        self.channel = channel
        self.timeout = timeout
        self.extra_args = list(extra_args)
        self.retry_delay = retry_delay

    def build_args(self, endpoint: str, content: str) -> list[str]:
        return [
            self.command,
            *self.extra_args,
            "--channel", self.channel,
            "--endpoint", endpoint,
            "--json",
            "--content", content,
        ]

    async def _run_once(self, endpoint: str, content: str) -> tuple[Optional[int], str, str]:
        proc = await asyncio.create_subprocess_exec(
            *self.build_args(endpoint, content),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            out, err = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            return None, "", f"timed out after {self.timeout}s"
        return proc.returncode, out.decode(errors="replace"), err.decode(errors="replace")

    async def forward(self, endpoint: str, content: str) -> None:
        """Deliver one message to the agent.

        Raises:
            AgentRejection: structured refusal (not retried).
            AgentBridgeError: unstructured failure on both attempts.
        """
        last_output = ""
        last_code = None
        for attempt in range(2):
            try:
                code, out, err = await self._run_once(endpoint, content)
            except OSError as e:
                # Missing or non-executable bridge
                code, out, err = None, "", str(e)

            if code == 0:
                logger.info(f"Forwarded to agent ({endpoint}): {content[:50]!r}")
                return

            rejection = parse_rejection(out, err)
            if rejection:
                logger.warning(f"Agent bridge rejected {endpoint}: {rejection.code} {rejection.message}")
                raise rejection

            last_code = code
            last_output = (err or out).strip()[:500]
            if attempt == 0:
                logger.warning(
                    f"Agent bridge failed (exit {code}) for {endpoint}: {last_output}. Retrying in {self.retry_delay}s..."
                )
                await asyncio.sleep(self.retry_delay)

        logger.error(f"Agent bridge failed twice for {endpoint} (exit {last_code}): {last_output}")
        raise AgentBridgeError(f"agent bridge failed (exit {last_code})", returncode=last_code, output=last_output)
