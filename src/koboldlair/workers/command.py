from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Mapping, Sequence
from pathlib import Path

from koboldlair.models import TaskRecord
from koboldlair.workers.base import Worker, WorkerExecutionError, WorkerProcessError, WorkerResult
from koboldlair.workers.classifier import is_retriable

logger = logging.getLogger(__name__)


class CommandWorker(Worker):
    """Runs an agent CLI with the task prompt as its final argument."""

    def __init__(
        self,
        command: Sequence[str],
        *,
        name: str | None = None,
        env: Mapping[str, str] | None = None,
    ) -> None:
        if not command:
            raise ValueError("CommandWorker requires a non-empty command.")
        self.command = list(command)
        self.name = name or Path(self.command[0]).name
        self.env = dict(env or {})

    @staticmethod
    def build_prompt(task: TaskRecord) -> str:
        lines = [f"Task {task.id} ({task.area}, {task.agent_type}):", task.description.strip()]
        for step in task.steps:
            if step.description:
                lines.append(f"- Step {step.index}: {step.description}")
            if step.files_to_create:
                lines.append(f"  Create: {', '.join(step.files_to_create)}")
            if step.files_to_modify:
                lines.append(f"  Modify: {', '.join(step.files_to_modify)}")
            if step.expected_content:
                lines.append(f"  Must contain: {', '.join(step.expected_content)}")
        return "\n".join(line for line in lines if line)

    def build_command(self, task: TaskRecord) -> list[str]:
        return [*self.command, self.build_prompt(task)]

    def _environment(self, task: TaskRecord) -> dict[str, str]:
        env = os.environ.copy()
        env.update(self.env)
        env["LAIR_TASK_ID"] = task.id
        env["LAIR_AGENT_TYPE"] = task.agent_type
        if task.project_id:
            env["LAIR_PROJECT_ID"] = task.project_id
        return env

    async def _communicate(
        self, command: list[str], working_directory: Path, env: dict[str, str]
    ) -> tuple[str, str]:
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(working_directory),
                env=env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise WorkerProcessError(
                f"Worker binary not found: {self.command[0]}",
                worker=self.name,
                retriable=False,
            ) from exc

        try:
            stdout, stderr = await process.communicate()
        except asyncio.CancelledError:
            if process.returncode is None:
                process.kill()
                await process.wait()
            raise

        output = stdout.decode("utf-8", errors="replace").strip()
        error_output = stderr.decode("utf-8", errors="replace").strip()
        if process.returncode != 0:
            message = error_output or output
            raise WorkerExecutionError(
                f"{self.name} failed with exit code {process.returncode}: {message}",
                worker=self.name,
                exit_code=process.returncode,
                retriable=is_retriable(message),
            )
        return output, error_output

    async def run(self, task: TaskRecord, working_directory: Path) -> WorkerResult:
        logger.debug("Starting %s for task %s in %s", self.name, task.id, working_directory)
        output, error_output = await self._communicate(
            self.build_command(task), working_directory, self._environment(task)
        )
        return WorkerResult(
            success=True,
            output=output,
            metadata={"worker": self.name, "stderr": error_output},
        )

    async def complete(self, prompt: str, working_directory: Path | None = None) -> str:
        """Run the command with a free-form prompt and return its standard output."""
        env = os.environ.copy()
        env.update(self.env)
        output, _ = await self._communicate(
            [*self.command, prompt], working_directory or Path.cwd(), env
        )
        return output
