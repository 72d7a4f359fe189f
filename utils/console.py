"""
Console output styling for the agentdeck CLI.

Human-facing output (run progress, tool activity, notifications) goes
through the module-level `console`. Diagnostic output goes through
`logging` instead.

Verbose Levels:
    - OFF (0): only run summaries and errors
    - LIGHT (1): tool names and run start/end [default]
    - DEEP (2): tool inputs and result previews as well

Configuration:
    - Environment: AGENTDECK_VERBOSE=0|1|2 or off|light|deep
    - Colors are disabled by NO_COLOR / AGENTDECK_NO_COLOR or a non-TTY stderr
"""

import os
import sys
from enum import IntEnum
from typing import Any


class VerboseLevel(IntEnum):
    """Verbose output levels."""
    OFF = 0
    LIGHT = 1
    DEEP = 2


_LEVEL_NAMES = {
    "0": VerboseLevel.OFF, "off": VerboseLevel.OFF, "none": VerboseLevel.OFF, "false": VerboseLevel.OFF,
    "1": VerboseLevel.LIGHT, "light": VerboseLevel.LIGHT, "on": VerboseLevel.LIGHT, "true": VerboseLevel.LIGHT,
    "2": VerboseLevel.DEEP, "deep": VerboseLevel.DEEP, "full": VerboseLevel.DEEP, "all": VerboseLevel.DEEP,
}


def parse_verbose_level(value: str | int | VerboseLevel) -> VerboseLevel:
    """Parse a verbose level from a string ("off", "light", "deep", "0".."2") or int.

    Unknown strings map to OFF; ints are clamped into range.
    """
    if isinstance(value, VerboseLevel):
        return value
    if isinstance(value, int):
        return VerboseLevel(min(max(value, 0), 2))
    return _LEVEL_NAMES.get(str(value).lower().strip(), VerboseLevel.OFF)


class Colors:
    """ANSI escape codes for terminal colors."""
    RESET = "\033[0m"
    BOLD = "\033[1m"
    DIM = "\033[2m"
    RED = "\033[31m"
    GREEN = "\033[32m"
    YELLOW = "\033[33m"
    BLUE = "\033[34m"
    CYAN = "\033[36m"
    BRIGHT_BLACK = "\033[90m"


def _supports_color() -> bool:
    """Check if stderr is a color-capable terminal."""
    if os.environ.get("NO_COLOR") or os.environ.get("AGENTDECK_NO_COLOR"):
        return False
    if os.environ.get("FORCE_COLOR"):
        return True
    if not hasattr(sys.stderr, "isatty") or not sys.stderr.isatty():
        return False
    return os.environ.get("TERM") != "dumb"


class Console:
    """
    Styled console output.

    Example:
        from utils.console import console

        console.run_start("daily-digest", trigger="cron")
        console.tool_start("search_web", {"query": "..."})
    """

    # Argument names whose values never reach the terminal
    _SENSITIVE_KEYS = frozenset({
        "password", "secret", "api_key", "token", "access_token", "private_key",
    })

    def __init__(self):
        self._verbose_level = parse_verbose_level(os.environ.get("AGENTDECK_VERBOSE", "1"))
        self._use_color = _supports_color()

    def set_verbose(self, level: VerboseLevel | int | str):
        self._verbose_level = parse_verbose_level(level)

    def get_verbose(self) -> VerboseLevel:
        return self._verbose_level

    def _colorize(self, text: str, *codes: str) -> str:
        if not self._use_color:
            return text
        return f"{''.join(codes)}{text}{Colors.RESET}"

    def _print(self, text: str):
        print(text, file=sys.stderr, flush=True)

    # -------------------------------------------------------------------------
    # Primary output
    # -------------------------------------------------------------------------

    def banner(self, text: str, width: int = 40):
        self._print(self._colorize(text, Colors.BOLD, Colors.BLUE))
        self._print(self._colorize("=" * width, Colors.DIM, Colors.BLUE))

    def agent(self, text: str, prefix: str = "Agent"):
        """Print agent output."""
        styled_prefix = self._colorize(f"{prefix}: ", Colors.BOLD, Colors.CYAN)
        self._print(f"{styled_prefix}{text}\n")

    def system(self, text: str):
        self._print(self._colorize(text, Colors.BLUE))

    def error(self, text: str):
        self._print(self._colorize(f"Error: {text}", Colors.BOLD, Colors.RED))

    def success(self, text: str):
        self._print(self._colorize(text, Colors.GREEN))

    def warning(self, text: str):
        self._print(self._colorize(f"Warning: {text}", Colors.YELLOW))

    def notify(self, title: str, body: str):
        """Print a run notification."""
        self._print(self._colorize(f"[notify] {title}", Colors.BOLD, Colors.GREEN))
        if body:
            self._print(f"  {body}")

    # -------------------------------------------------------------------------
    # Verbose output
    # -------------------------------------------------------------------------

    def verbose(self, text: str, level: VerboseLevel = VerboseLevel.LIGHT):
        """Print verbose output if the current level allows it."""
        if self._verbose_level < level:
            return
        if level == VerboseLevel.LIGHT:
            self._print(self._colorize(f"  {text}", Colors.YELLOW))
        else:
            self._print(self._colorize(f"    {text}", Colors.DIM, Colors.BRIGHT_BLACK))

    def run_start(self, agent_name: str, trigger: str = "manual"):
        self.verbose(f"[scheduler] Running {agent_name} ({trigger})")

    def run_end(self, agent_name: str, status: str, duration_ms: int = None):
        timing = f" ({duration_ms}ms)" if duration_ms else ""
        self.verbose(f"[scheduler] {agent_name} {status}{timing}")

    def tool_start(self, name: str, inputs: dict[str, Any] = None):
        self.verbose(f"[tool] {name}")
        if inputs and self._verbose_level >= VerboseLevel.DEEP:
            self.verbose(f"  input: {self.summarize(self._redact(inputs))}", VerboseLevel.DEEP)

    def tool_end(self, name: str, preview: str = None):
        self.verbose(f"[tool] {name} done")
        if preview and self._verbose_level >= VerboseLevel.DEEP:
            self.verbose(f"  result: {self.summarize(preview)}", VerboseLevel.DEEP)

    def memory_op(self, action: str, detail: str = None):
        msg = f"[memory] {action}"
        if detail:
            msg += f": {detail[:50]}"
        self.verbose(msg, VerboseLevel.DEEP)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _redact(self, d: dict) -> dict:
        return {k: "***" if k.lower() in self._SENSITIVE_KEYS else v for k, v in d.items()}

    def summarize(self, value: Any, max_len: int = 80) -> str:
        """One-line preview of a value for terminal display."""
        if isinstance(value, dict):
            text = "{" + ", ".join(f"{k}={self.summarize(v, 30)}" for k, v in value.items()) + "}"
        elif isinstance(value, str):
            text = value.replace("\n", " ")
        else:
            text = str(value)
        if len(text) > max_len:
            text = text[:max_len - 3] + "..."
        return text


# Global console instance
console = Console()
