"""Subprocess-based worker for command-line tools."""

import asyncio
import logging
import os
import shlex
from typing import Dict, Iterable, List, Optional, Sequence, Union

from taskgrid.interfaces.worker import CostTier, Outcome
from taskgrid.workers.base import BaseWorker
from taskgrid.workers.callable_worker import CostSpec, price_for

logger = logging.getLogger(__name__)

_STDERR_TAIL = 2000


class SubprocessWorker(BaseWorker):
    """Execute a command per task, feeding the description on stdin.

    The command may be an argv list or a string (split with ``shlex``).
    ``{tier}`` in any argument is replaced with the approved tier.  The tier
    is also exported as ``TASKGRID_TIER``.  Exit code 0 is success with
    stdout as the result; anything else is a failed outcome carrying the
    stderr tail.  When cancelled, the process gets SIGTERM and, after
    *terminate_grace* seconds, SIGKILL.
    """

    def __init__(
        self,
        worker_id: str,
        capabilities: Iterable[str],
        command: Union[str, Sequence[str]],
        concurrency_limit: int = 1,
        cost_tier: CostTier = CostTier.MEDIUM,
        cost_per_call: Optional[CostSpec] = None,
        env: Optional[Dict[str, str]] = None,
        cwd: Optional[str] = None,
        terminate_grace: float = 2.0,
    ) -> None:
        super().__init__(worker_id, capabilities, concurrency_limit, cost_tier)
        args = shlex.split(command) if isinstance(command, str) else list(command)
        if not args:
            raise ValueError("SubprocessWorker command is empty")
        self._command: List[str] = args
        self._cost_per_call = cost_per_call
        self._env = env or {}
        self._cwd = cwd
        self._terminate_grace = terminate_grace

    def _build_args(self, tier: CostTier) -> List[str]:
        return [arg.replace("{tier}", tier.value) for arg in self._command]

    async def execute(self, description: str, timeout: float, *, tier: CostTier) -> Outcome:
        env = os.environ.copy()
        env.update(self._env)
        env["TASKGRID_TIER"] = tier.value
        args = self._build_args(tier)

        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                cwd=self._cwd,
            )
        except FileNotFoundError:
            return Outcome.failed(f"Command not found: {args[0]}")

        try:
            stdout, stderr = await proc.communicate(description.encode("utf-8"))
        except asyncio.CancelledError:
            await self._shutdown(proc)
            raise

        if proc.returncode != 0:
            tail = stderr.decode("utf-8", errors="replace")[-_STDERR_TAIL:].strip()
            logger.debug("Worker %s command exited %s", self.worker_id, proc.returncode)
            return Outcome.failed(
                f"Command exited with code {proc.returncode}" + (f": {tail}" if tail else ""),
            )
        return Outcome.ok(
            stdout.decode("utf-8", errors="replace").strip(),
            actual_cost=price_for(self._cost_per_call, tier),
        )

    async def _shutdown(self, proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is not None:
            return
        proc.terminate()
        try:
            await asyncio.wait_for(proc.wait(), self._terminate_grace)
        except asyncio.TimeoutError:
            logger.warning("Worker %s process %s ignored SIGTERM, killing", self.worker_id, proc.pid)
            proc.kill()
            await proc.wait()
