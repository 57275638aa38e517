# src/engine/command.py
"""
CommandInterpreter: turns a free-text or structured scan command into an argv vector.

Arguments are never passed through a shell; the container receives the argv as is.
"""
from dataclasses import dataclass
from typing import List, Optional, Tuple

from engine.errors import EmptyCommandError, UnknownPresetError
from tools.registry import ToolId, ToolRegistry
from utils.targets import normalize_nmap_flags, sanitize_flags, sanitize_target_host, sanitize_target_url


@dataclass(frozen=True)
class ResolvedCommand:
    tool: ToolId
    image: str
    argv: Tuple[str, ...]
    target: Optional[str] = None

    @property
    def command_line(self) -> str:
        return " ".join(self.argv)


@dataclass(frozen=True)
class ScanPreset:
    tool: ToolId
    flags: Tuple[str, ...]
    timeout_seconds: int
    description: str


SCAN_PRESETS = {
    "headers_tls": ScanPreset(
        ToolId.NMAP,
        ("-p", "443", "--script", "ssl-enum-ciphers,ssl-cert", "--host-timeout=120s"),
        180,
        "TLS and certificate surface checks",
    ),
    "passive_web": ScanPreset(
        ToolId.WHATWEB,
        ("-a", "3", "--max-threads", "5", "--color=never"),
        120,
        "Passive web fingerprinting",
    ),
}


def tokenize(command: str) -> List[str]:
    return (command or "").split()


class CommandInterpreter:
    def __init__(self, registry: ToolRegistry):
        self.registry = registry

    def parse(self, command: str) -> ResolvedCommand:
        tokens = tokenize(command)
        if not tokens:
            raise EmptyCommandError()
        tool_id, entry = self.registry.resolve(tokens[0])
        user_args = tokens[1:]
        target = next((t for t in reversed(user_args) if not t.startswith("-")), None)
        return ResolvedCommand(tool_id, entry.image, tuple(entry.base_args) + tuple(user_args), target)

    def from_request(self, tool: str, target: str, flags=None) -> ResolvedCommand:
        tool_id, entry = self.registry.resolve(tool)
        if entry.url_target:
            clean_target = sanitize_target_url(target)
        else:
            clean_target = sanitize_target_host(target)

        clean_flags = sanitize_flags(flags)
        if tool_id == ToolId.NMAP:
            clean_flags = normalize_nmap_flags(clean_flags, entry.base_args)

        argv = list(entry.base_args) + clean_flags
        if entry.target_flag:
            argv.append(entry.target_flag)
        argv.append(clean_target)
        return ResolvedCommand(tool_id, entry.image, tuple(argv), clean_target)

    def from_preset(self, name: str, target: str) -> Tuple[ResolvedCommand, int]:
        preset = SCAN_PRESETS.get(name)
        if preset is None:
            raise UnknownPresetError(f"Unknown scan preset '{name}'. Available: {', '.join(SCAN_PRESETS)}.")
        resolved = self.from_request(preset.tool.value, target, list(preset.flags))
        return resolved, preset.timeout_seconds * 1000
