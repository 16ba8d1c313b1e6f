"""Errors raised by the build pipeline.

Every error names the target it belongs to and the pipeline stage that
failed, and keeps the collaborator's own diagnostic text so that a bad
vendor or patch file can be root-caused from the message alone.
"""

from __future__ import annotations

from pathlib import Path
from typing import Iterable, Optional


class BuildError(Exception):
    """Base class for all pipeline failures."""

    stage: str = "build"

    def __init__(self, target: Optional[str], diagnostic: str) -> None:
        self.target = target
        self.diagnostic = diagnostic
        super().__init__(self._message())

    def _message(self) -> str:
        return f"{self.target}: {self.stage} failed: {self.diagnostic}"

    def to_dict(self) -> dict:
        return {
            "target": self.target,
            "stage": self.stage,
            "diagnostic": self.diagnostic,
        }


class ConfigurationError(BuildError):
    """No target could be resolved from the declared flags."""

    stage = "configure"

    def __init__(self, diagnostic: str, available: Iterable[str] = ()) -> None:
        self.available = sorted(available)
        super().__init__(None, diagnostic)

    def _message(self) -> str:
        return self.diagnostic

    def to_dict(self) -> dict:
        payload = super().to_dict()
        payload["available"] = list(self.available)
        return payload


class ParseError(BuildError):
    stage = "parse"


class SerializeError(BuildError):
    stage = "serialize"


class PatchError(BuildError):
    stage = "patch"

    def __init__(self, target: str, patch_path: Optional[Path], diagnostic: str) -> None:
        self.patch_path = patch_path
        super().__init__(target, diagnostic)

    def _message(self) -> str:
        if self.patch_path is None:
            return super()._message()
        return f"{self.target}: {self.stage} failed: unable to apply patch {self.patch_path}: {self.diagnostic}"

    def to_dict(self) -> dict:
        payload = super().to_dict()
        payload["patch_path"] = str(self.patch_path) if self.patch_path else None
        return payload


class GenerateError(BuildError):
    stage = "generate"
