from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from foreman.backends.base import AgentBackend, BackendExecutionError


class ClaudeCodeBackend(AgentBackend):
    name = "claude"

    def __init__(self, binary: str = "claude", working_directory: Path | None = None) -> None:
        self.binary = binary
        self.working_directory = working_directory

    def build_command(
        self, system_prompt: str, user_prompt: str, model: str | None = None
    ) -> list[str]:
        command = [self.binary, "-p", user_prompt, "--output-format", "stream-json", "--verbose"]
        if system_prompt:
            command.extend(["--append-system-prompt", system_prompt])
        if model:
            command.extend(["--model", model])
        return command

    @staticmethod
    def _extract_content(event: dict[str, Any]) -> str:
        if event.get("type") == "assistant" and isinstance(event.get("message"), dict):
            event = event["message"]
        content = event.get("content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            return "".join(
                item["text"]
                for item in content
                if isinstance(item, dict) and isinstance(item.get("text"), str)
            )
        delta = event.get("delta")
        return delta if isinstance(delta, str) else ""

    @staticmethod
    def _appears_partial_json(raw: str) -> bool:
        return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        *,
        model: str | None = None,
    ) -> AsyncIterator[str]:
        if context:
            user_prompt = (
                f"{user_prompt}\n\nContext JSON:\n"
                f"{json.dumps(context, ensure_ascii=False, indent=2)}"
            )
        command = self.build_command(system_prompt, user_prompt, model)
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(self.working_directory) if self.working_directory else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise BackendExecutionError(
                f"Agent binary not found: {self.binary}", tool=self.name, retriable=False
            ) from exc
        if process.stdout is None:
            raise BackendExecutionError(
                "Agent process did not expose stdout.", tool=self.name, retriable=False
            )

        buffer = ""
        async for raw_line in process.stdout:
            line = raw_line.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            candidate = f"{buffer}{line}" if buffer else line
            try:
                event = json.loads(candidate)
            except json.JSONDecodeError:
                if self._appears_partial_json(candidate):
                    buffer = candidate
                    continue
                buffer = ""
                yield line
                continue
            buffer = ""
            if isinstance(event, dict):
                content = self._extract_content(event)
                if content:
                    yield content

        if buffer:
            yield buffer

        return_code = await process.wait()
        stderr_output = ""
        if process.stderr is not None:
            stderr_output = (await process.stderr.read()).decode("utf-8", errors="replace").strip()
        if return_code != 0:
            raise BackendExecutionError(
                f"Agent exited with code {return_code}: {stderr_output}",
                tool=self.name,
                exit_code=return_code,
            )
