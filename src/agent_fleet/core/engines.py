"""Agent engines: one CLI wrapper per supported coding agent.

Every engine runs its program as a subprocess inside a worktree and turns the
program's output into an AgentResult. Running processes are kept in a
module-level registry so an interrupt can kill them all.
"""

import json
import logging
import os
import re
import shutil
import signal
import subprocess
import tempfile
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)

# Module-level registry of active Popen objects (keyed by PID).
# Reentrant: the interrupt handler takes it on the main thread.
_active_processes: dict[int, subprocess.Popen] = {}
_registry_lock = threading.RLock()

# Scratch files created for engines that report through a file
_temp_files: set[Path] = set()

INPUT_TOKEN_PRICE = 0.000003
OUTPUT_TOKEN_PRICE = 0.000015


@dataclass
class AgentResult:
    success: bool
    response: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    error: str | None = None
    stderr: str = ""
    duration_ms: int = 0


class AgentBackend(Protocol):
    name: str

    def execute(self, prompt: str, cwd: str | Path) -> AgentResult: ...


# ── Output helpers ───────────────────────────────────────────────────────────


def _json_lines(output: str) -> list[dict]:
    events = []
    for line in output.splitlines():
        line = line.strip()
        if not line.startswith("{"):
            continue
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            events.append(data)
    return events


def _last_event(events: list[dict], event_type: str) -> dict | None:
    for event in reversed(events):
        if event.get("type") == event_type:
            return event
    return None


def _int(value) -> int:
    try:
        return max(0, int(value))
    except (TypeError, ValueError):
        return 0


def check_for_errors(output: str) -> str | None:
    """Return the message of the first error event in the output, if any."""
    for event in _json_lines(output):
        if event.get("type") != "error":
            continue
        error = event.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if event.get("message"):
            return str(event["message"])
        return json.dumps(event)
    return None


STEP_PATTERNS: list[tuple[str, re.Pattern]] = [
    ("Committing", re.compile(r"git commit")),
    ("Staging", re.compile(r"git add")),
    ("Logging", re.compile(r"progress\.txt")),
    ("Updating PRD", re.compile(r"PRD\.md|tasks\.yaml")),
    ("Linting", re.compile(r"lint|eslint|biome|prettier|ruff")),
    ("Testing", re.compile(r"vitest|jest|bun test|npm test|pytest|go test")),
    ("Writing tests", re.compile(r"\.test\.|\.spec\.|__tests__|_test\.go|test_\w+\.py")),
    ("Implementing", re.compile(r'"(?:tool|name)":"(?:[Ww]rite|[Ee]dit)"')),
    ("Reading code", re.compile(r'"(?:tool|name)":"(?:[Rr]ead|[Gg]lob|[Gg]rep)"')),
]


def detect_step(text: str) -> str | None:
    """Map a chunk of agent output to a coarse step label."""
    for label, pattern in STEP_PATTERNS:
        if pattern.search(text):
            return label
    return None


def estimate_cost(input_tokens: int, output_tokens: int) -> float:
    return input_tokens * INPUT_TOKEN_PRICE + output_tokens * OUTPUT_TOKEN_PRICE


# ── Process registry ─────────────────────────────────────────────────────────


def _register(proc: subprocess.Popen) -> None:
    with _registry_lock:
        _active_processes[proc.pid] = proc


def _unregister(proc: subprocess.Popen) -> None:
    with _registry_lock:
        _active_processes.pop(proc.pid, None)


def _kill_group(proc: subprocess.Popen, sig: int = signal.SIGTERM) -> None:
    try:
        os.killpg(proc.pid, sig)
    except ProcessLookupError:
        pass  # Already exited
    except PermissionError:
        proc.kill()


def active_process_count() -> int:
    with _registry_lock:
        return len(_active_processes)


def kill_active_processes() -> int:
    """Terminate every registered agent process group. Returns how many were signalled."""
    with _registry_lock:
        procs = list(_active_processes.values())
        _active_processes.clear()
    for proc in procs:
        if proc.poll() is None:
            logger.info("Killing agent process %s", proc.pid)
            _kill_group(proc)
    return len(procs)


def cleanup_temp_files() -> None:
    for path in list(_temp_files):
        path.unlink(missing_ok=True)
        _temp_files.discard(path)


# ── Engines ──────────────────────────────────────────────────────────────────


class CliEngine:
    """Base class for engines that wrap an agent CLI program."""

    name = "engine"
    command = ""
    extra_env: dict[str, str] = {}

    def __init__(self, model: str | None = None, timeout: float | None = None):
        self.model = model
        self.timeout = timeout

    def is_available(self) -> bool:
        return shutil.which(self.command) is not None

    def prepare(self) -> dict:
        """Per-invocation scratch state. Engines are shared across threads."""
        return {}

    def finish(self, ctx: dict) -> None:
        pass

    def build_args(self, prompt: str, ctx: dict) -> list[str]:
        raise NotImplementedError

    def parse_output(self, output: str, ctx: dict) -> tuple[str, int, int]:
        """Return (response, input_tokens, output_tokens)."""
        return output.strip(), 0, 0

    def _model_args(self) -> list[str]:
        return ["--model", self.model] if self.model else []

    def execute(self, prompt: str, cwd: str | Path) -> AgentResult:
        return self.execute_streaming(prompt, cwd)

    def execute_streaming(
        self,
        prompt: str,
        cwd: str | Path,
        on_step: Callable[[str], None] | None = None,
    ) -> AgentResult:
        ctx = self.prepare()
        try:
            cmd = [self.command] + self.build_args(prompt, ctx)
            return self._run(cmd, cwd, ctx, on_step)
        finally:
            self.finish(ctx)

    def _run(
        self,
        cmd: list[str],
        cwd: str | Path,
        ctx: dict,
        on_step: Callable[[str], None] | None,
    ) -> AgentResult:
        env = {**os.environ, **self.extra_env}
        start = time.monotonic()
        timed_out = threading.Event()

        with tempfile.TemporaryFile(mode="w+") as stderr_file:
            try:
                proc = subprocess.Popen(
                    cmd,
                    cwd=str(cwd),
                    env=env,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.PIPE,
                    stderr=stderr_file,
                    text=True,
                    start_new_session=True,
                )
            except OSError as e:
                return AgentResult(success=False, error=f"Failed to start {self.command}: {e}")

            _register(proc)
            timer = None
            if self.timeout:
                def _expire():
                    timed_out.set()
                    _kill_group(proc)

                timer = threading.Timer(self.timeout, _expire)
                timer.daemon = True
                timer.start()

            lines = []
            last_step = None
            try:
                for line in proc.stdout:
                    lines.append(line)
                    if on_step:
                        step = detect_step(line)
                        if step and step != last_step:
                            last_step = step
                            on_step(step)
                returncode = proc.wait()
            finally:
                if timer:
                    timer.cancel()
                _unregister(proc)
                proc.stdout.close()

            stderr_file.seek(0)
            stderr = stderr_file.read()

        output = "".join(lines)
        duration_ms = int((time.monotonic() - start) * 1000)

        if timed_out.is_set():
            return AgentResult(
                success=False,
                error=f"{self.name} timed out after {self.timeout:g}s",
                stderr=stderr,
                duration_ms=duration_ms,
            )

        error = check_for_errors(output) or check_for_errors(stderr)
        if error:
            return AgentResult(success=False, error=error, stderr=stderr, duration_ms=duration_ms)

        response, input_tokens, output_tokens = self.parse_output(output, ctx)
        result = AgentResult(
            success=returncode == 0,
            response=response,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            stderr=stderr,
            duration_ms=duration_ms,
        )
        if returncode != 0:
            tail = stderr.strip().splitlines()[-1:] or [f"exit code {returncode}"]
            result.error = f"{self.name} exited with code {returncode}: {tail[0]}"
        return result


class ClaudeEngine(CliEngine):
    name = "claude"
    command = "claude"

    def build_args(self, prompt: str, ctx: dict) -> list[str]:
        return [
            "--dangerously-skip-permissions",
            "--verbose",
            "--output-format", "stream-json",
            "-p", prompt,
        ] + self._model_args()

    def parse_output(self, output: str, ctx: dict) -> tuple[str, int, int]:
        result = _last_event(_json_lines(output), "result")
        if not result:
            return "", 0, 0
        usage = result.get("usage") or {}
        return (
            str(result.get("result") or ""),
            _int(usage.get("input_tokens")),
            _int(usage.get("output_tokens")),
        )


class QwenEngine(ClaudeEngine):
    name = "qwen"
    command = "qwen"

    def build_args(self, prompt: str, ctx: dict) -> list[str]:
        return [
            "--output-format", "stream-json",
            "--approval-mode", "yolo",
            "-p", prompt,
        ] + self._model_args()

    def parse_output(self, output: str, ctx: dict) -> tuple[str, int, int]:
        response, input_tokens, output_tokens = super().parse_output(output, ctx)
        return response or "Task completed", input_tokens, output_tokens


class OpenCodeEngine(CliEngine):
    name = "opencode"
    command = "opencode"
    extra_env = {"OPENCODE_PERMISSION": '{"*":"allow"}'}

    def build_args(self, prompt: str, ctx: dict) -> list[str]:
        return ["run", "--format", "json"] + self._model_args() + [prompt]

    def parse_output(self, output: str, ctx: dict) -> tuple[str, int, int]:
        events = _json_lines(output)
        input_tokens = output_tokens = 0
        finish = _last_event(events, "step_finish")
        if finish:
            tokens = (finish.get("part") or {}).get("tokens") or {}
            input_tokens = _int(tokens.get("input"))
            output_tokens = _int(tokens.get("output"))
        text = "".join(
            str((event.get("part") or {}).get("text") or "")
            for event in events
            if event.get("type") == "text"
        )
        return text or "Task completed", input_tokens, output_tokens


class CursorEngine(CliEngine):
    name = "cursor"
    command = "agent"

    def build_args(self, prompt: str, ctx: dict) -> list[str]:
        return ["--print", "--force", "--output-format", "stream-json"] + self._model_args() + [prompt]

    def parse_output(self, output: str, ctx: dict) -> tuple[str, int, int]:
        events = _json_lines(output)
        response = ""
        result = _last_event(events, "result")
        if result:
            response = str(result.get("result") or "")
        if not response:
            message = (_last_event(events, "assistant") or {}).get("message") or {}
            content = message.get("content")
            if isinstance(content, list) and content and isinstance(content[0], dict):
                response = str(content[0].get("text") or "")
            elif isinstance(content, str):
                response = content
        # Cursor does not report token usage
        return response or "Task completed", 0, 0


class DroidEngine(CliEngine):
    name = "droid"
    command = "droid"

    def build_args(self, prompt: str, ctx: dict) -> list[str]:
        return ["exec", "--output-format", "stream-json", "--auto", "medium"] + self._model_args() + [prompt]

    def parse_output(self, output: str, ctx: dict) -> tuple[str, int, int]:
        completion = _last_event(_json_lines(output), "completion")
        if not completion:
            return "", 0, 0
        return str(completion.get("finalText") or "Task completed"), 0, 0


class CodexEngine(CliEngine):
    name = "codex"
    command = "codex"

    def prepare(self) -> dict:
        fd, name = tempfile.mkstemp(prefix="fleet-codex-", suffix=".last")
        os.close(fd)
        path = Path(name)
        path.unlink()
        _temp_files.add(path)
        return {"last_message": path}

    def finish(self, ctx: dict) -> None:
        path = ctx["last_message"]
        path.unlink(missing_ok=True)
        _temp_files.discard(path)

    def build_args(self, prompt: str, ctx: dict) -> list[str]:
        return [
            "exec", "--full-auto", "--json",
            "--output-last-message", str(ctx["last_message"]),
        ] + self._model_args() + [prompt]

    def parse_output(self, output: str, ctx: dict) -> tuple[str, int, int]:
        path = ctx["last_message"]
        if not path.exists():
            return "", 0, 0
        lines = path.read_text().splitlines()
        if lines and lines[0].strip() == "Task completed successfully.":
            lines = lines[1:]
        return "\n".join(lines).strip(), 0, 0


class CopilotEngine(CliEngine):
    name = "copilot"
    command = "copilot"

    def build_args(self, prompt: str, ctx: dict) -> list[str]:
        return ["-p", prompt] + self._model_args()

    def parse_output(self, output: str, ctx: dict) -> tuple[str, int, int]:
        meaningful = []
        for line in output.splitlines():
            stripped = line.strip()
            if not stripped or stripped.startswith("?"):
                continue
            if "Thinking..." in stripped or "Working on it..." in stripped:
                continue
            meaningful.append(stripped)
        # Copilot does not expose token counts in programmatic mode
        return "\n".join(meaningful) or "Task completed", 0, 0


ENGINES: dict[str, type[CliEngine]] = {
    engine.name: engine
    for engine in (
        ClaudeEngine,
        OpenCodeEngine,
        CursorEngine,
        QwenEngine,
        DroidEngine,
        CodexEngine,
        CopilotEngine,
    )
}


def get_engine(name: str, model: str | None = None, timeout: float | None = None) -> CliEngine:
    """Instantiate an engine by name. Raises ValueError for unknown names."""
    try:
        engine_cls = ENGINES[name]
    except KeyError:
        raise ValueError(
            f"Unknown engine: {name}. Must be one of: {', '.join(sorted(ENGINES))}"
        ) from None
    return engine_cls(model=model, timeout=timeout)
