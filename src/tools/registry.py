# src/tools/registry.py
"""
Tool registry: maps each supported tool to its container image and base invocation.
"""
from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, Optional, Tuple

import yaml

from engine.errors import ConfigurationError, UnknownToolError


class ToolId(str, Enum):
    NMAP = "nmap"
    NIKTO = "nikto"
    SQLMAP = "sqlmap"
    GOBUSTER = "gobuster"
    WHATWEB = "whatweb"
    WPSCAN = "wpscan"


@dataclass(frozen=True)
class ToolImage:
    image: Optional[str]  # None means the configured default image
    base_args: Tuple[str, ...]
    target_flag: Optional[str] = None
    url_target: bool = True


# base_args include the tool binary itself
BUILTIN_TOOLS: Dict[ToolId, ToolImage] = {
    ToolId.NMAP: ToolImage(None, ("nmap", "-sV", "-T4", "-sT", "-Pn"), url_target=False),
    ToolId.NIKTO: ToolImage(None, ("nikto",), target_flag="-h"),
    ToolId.SQLMAP: ToolImage(None, ("sqlmap", "--batch"), target_flag="-u"),
    ToolId.GOBUSTER: ToolImage(None, ("gobuster",), target_flag="-u"),
    ToolId.WHATWEB: ToolImage(None, ("whatweb",)),
    ToolId.WPSCAN: ToolImage(None, ("wpscan",), target_flag="--url"),
}

_missing = set(ToolId) - set(BUILTIN_TOOLS)
if _missing:
    raise RuntimeError(f"Tool registry has no entry for: {sorted(t.value for t in _missing)}")


class ToolRegistry:
    def __init__(self, default_image: str, overrides: Optional[Dict[ToolId, ToolImage]] = None):
        self.default_image = default_image
        self._tools = dict(BUILTIN_TOOLS)
        if overrides:
            self._tools.update(overrides)

    @classmethod
    def from_yaml(cls, default_image: str, file_path: Optional[str]) -> "ToolRegistry":
        """
        Build a registry whose image/base_args may be overridden by a YAML file:

            tools:
              nmap:
                image: registry.local/nmap:7.94
                base_args: [nmap, -sT, -Pn]
        """
        if not file_path:
            return cls(default_image)
        try:
            with open(file_path, "r") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Failed to load tools config {file_path}: {e}") from e

        overrides = {}
        for name, entry in (data.get("tools") or {}).items():
            try:
                tool_id = ToolId(str(name).lower())
            except ValueError:
                raise ConfigurationError(f"Tools config references unknown tool '{name}'.")
            entry = entry or {}
            current = BUILTIN_TOOLS[tool_id]
            base_args = entry.get("base_args")
            overrides[tool_id] = replace(
                current,
                image=entry.get("image", current.image),
                base_args=tuple(str(a) for a in base_args) if base_args else current.base_args,
            )
        return cls(default_image, overrides)

    def resolve(self, tool_name: str) -> Tuple[ToolId, ToolImage]:
        try:
            tool_id = ToolId((tool_name or "").strip().lower())
        except ValueError:
            raise UnknownToolError(tool_name, allowed=self.tool_names())
        entry = self._tools[tool_id]
        if entry.image is None:
            entry = replace(entry, image=self.default_image)
        return tool_id, entry

    def tool_names(self):
        return [t.value for t in ToolId]

    def images(self):
        return sorted({entry.image or self.default_image for entry in self._tools.values()})
