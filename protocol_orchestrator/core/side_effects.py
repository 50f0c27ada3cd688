"""Commit/push side effects applied when a phase completes."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass
class SideEffectResult:
    ok: bool
    detail: str = ""


class SideEffects(ABC):
    """Version-control collaborator."""

    @abstractmethod
    async def commit(self, message: str, paths: list[str] | None = None) -> SideEffectResult:
        pass

    @abstractmethod
    async def push(self) -> SideEffectResult:
        pass


class NullSideEffects(SideEffects):
    """Records what would have happened. Used when side effects are disabled."""

    def __init__(self) -> None:
        self.commits: list[str] = []
        self.pushes = 0

    async def commit(self, message: str, paths: list[str] | None = None) -> SideEffectResult:
        self.commits.append(message)
        return SideEffectResult(ok=True, detail="skipped")

    async def push(self) -> SideEffectResult:
        self.pushes += 1
        return SideEffectResult(ok=True, detail="skipped")


class GitSideEffects(SideEffects):
    """Runs git in the project root."""

    def __init__(self, project_root: Path, timeout: float = 120.0) -> None:
        self.project_root = project_root
        self.timeout = timeout

    async def commit(self, message: str, paths: list[str] | None = None) -> SideEffectResult:
        add = await self._git("add", *(paths or ["-A"]))
        if not add.ok:
            return add
        return await self._git("commit", "-m", message)

    async def push(self) -> SideEffectResult:
        return await self._git("push")

    async def _git(self, *args: str) -> SideEffectResult:
        try:
            process = await asyncio.create_subprocess_exec(
                "git",
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                cwd=self.project_root,
            )
            stdout, _ = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            return SideEffectResult(ok=False, detail=f"git {args[0]} timed out")
        except OSError as e:
            return SideEffectResult(ok=False, detail=str(e))

        output = stdout.decode("utf-8", errors="replace").strip()
        if process.returncode != 0:
            logger.warning("git %s failed: %s", args[0], output)
            return SideEffectResult(ok=False, detail=output)
        return SideEffectResult(ok=True, detail=output)
