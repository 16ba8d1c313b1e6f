"""Drive the per-chip pipeline: ATDF -> SVD -> patched SVD -> C++ header.

For every target the builder writes, below the output directory:

  svd/<target>.svd          the SVD generated from the vendor ATDF file
  svd/<target>.svd.patched  the SVD after applying patch/<target>.yaml (a copy when there is no patch)
  <target>.hpp              the generated register bindings

The first failing stage stops the whole build. Files written for earlier
targets are left in place.
"""

from __future__ import annotations

import contextlib
import io
import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterable, NamedTuple, Optional, Set, Type

from pacgen.config import ALL_TARGETS, BuildConfig, normalize_features
from pacgen.errors import (
    BuildError,
    ConfigurationError,
    GenerateError,
    ParseError,
    PatchError,
    SerializeError,
)
from pacgen.generators import cxx
from pacgen.parsers import atdf
from pacgen.tools import patch as svdpatch
from pacgen.tools import svd

log = logging.getLogger(__name__)

PATCH_EXTENSION = svdpatch.PATCH_EXTENSION
VENDOR_EXTENSION = atdf.ATDF_EXTENSION
SOURCE_EXTENSION = '.hpp'

GENERATOR_CONFIG = cxx.Config(
    target=cxx.Target.NONE,
    make_mod=True,
    generic_mod=True,
    strict=True,
    log_level='DEBUG',
)


@dataclass(frozen=True)
class Toolchain:
    """The collaborators used by the pipeline, one entry point each."""

    parse: Callable = atdf.parse
    serialize: Callable = svd.generate
    load_patch: Callable = svdpatch.load_patch
    patch: Callable = svdpatch.process
    generate: Callable = cxx.generate

    parse_errors: tuple = (atdf.AtdfError,)
    serialize_errors: tuple = (svd.SvdError,)
    patch_errors: tuple = (svdpatch.SvdPatchError,)
    generate_errors: tuple = (cxx.GeneratorError,)


class Artifacts(NamedTuple):
    target: str
    svd: Path
    patched: Path
    source: Path


def scan_vendor_dir(vendor_dir: Path) -> Set[str]:
    """Return the stems of all vendor description files in vendor_dir."""
    vendor_dir = Path(vendor_dir)
    if not vendor_dir.is_dir():
        log.warning("vendor directory %s does not exist", vendor_dir)
        return set()
    return {p.name[: -len(VENDOR_EXTENSION)] for p in vendor_dir.iterdir()
            if p.name.endswith(VENDOR_EXTENSION) and p.is_file()}


def resolve_targets(features: Iterable[str], available: Iterable[str]) -> Set[str]:
    """Select the targets to build from the declared flags.

    The reserved flag all_mcus selects every available target. An empty
    selection raises ConfigurationError listing what is available.
    """
    features = normalize_features(features)
    available = set(available)
    if ALL_TARGETS in features:
        targets = set(available)
    else:
        targets = features & available
    if not targets:
        raise ConfigurationError(
            "at least one MCU must be enabled as a feature (or use %s)" % ALL_TARGETS,
            available=available,
        )
    return targets


@contextlib.contextmanager
def _stage(error: Type[BuildError], target: str, errors: tuple, **context):
    try:
        yield
    except errors + (OSError,) as e:
        raise error(target=target, diagnostic=str(e), **context) from e


class Builder:
    """Runs the pipeline for every target selected by a BuildConfig."""

    def __init__(
        self,
        config: BuildConfig,
        toolchain: Optional[Toolchain] = None,
        available: Optional[Callable[[], Iterable[str]]] = None,
        generator_config: cxx.Config = GENERATOR_CONFIG,
    ) -> None:
        self.config = config
        self.toolchain = toolchain or Toolchain()
        self.available = available or (lambda: scan_vendor_dir(config.vendor_dir))
        self.generator_config = generator_config

    def targets(self) -> Set[str]:
        return resolve_targets(self.config.features, self.available())

    def run(self) -> Dict[str, Artifacts]:
        """Build all selected targets, stopping at the first failure."""
        targets = self.targets()
        log.info("Building %d target(s): %s", len(targets), ", ".join(sorted(targets)))
        self.config.svd_dir.mkdir(parents=True, exist_ok=True)
        results = {}
        for target in sorted(targets):
            results[target] = self.build_target(target)
        return results

    def build_target(self, target: str) -> Artifacts:
        """Run parse, serialize, patch and generate for one target."""
        tc = self.toolchain
        vendor_path = self.config.vendor_dir / f"{target}{VENDOR_EXTENSION}"
        svd_path = self.config.svd_dir / f"{target}.svd"
        patched_path = self.config.svd_dir / f"{target}.svd.patched"
        patch_path = self.config.patch_dir / f"{target}{PATCH_EXTENSION}"
        source_path = self.config.out_dir / f"{target}{SOURCE_EXTENSION}"

        log.info("%s: parsing %s", target, vendor_path)
        with _stage(ParseError, target, tc.parse_errors):
            with open(vendor_path, 'rb') as f:
                chip = tc.parse(f)

        log.info("%s: writing %s", target, svd_path)
        with _stage(SerializeError, target, tc.serialize_errors):
            buf = io.StringIO()
            tc.serialize(chip, buf)
            svd_path.parent.mkdir(parents=True, exist_ok=True)
            svd_path.write_text(buf.getvalue(), encoding='utf-8')

        if patch_path.exists():
            log.info("%s: applying %s", target, patch_path)
            with _stage(PatchError, target, tc.patch_errors, patch_path=patch_path):
                text = tc.patch(svd_path.read_text(encoding='utf-8'), tc.load_patch(patch_path))
                patched_path.write_text(text, encoding='utf-8')
        else:
            log.debug("%s: no patch file %s", target, patch_path)
            with _stage(PatchError, target, tc.patch_errors, patch_path=None):
                shutil.copyfile(svd_path, patched_path)
                text = patched_path.read_text(encoding='utf-8')

        log.info("%s: generating %s", target, source_path)
        with _stage(GenerateError, target, tc.generate_errors):
            gen = tc.generate(text, self.generator_config)
            source_path.parent.mkdir(parents=True, exist_ok=True)
            source_path.write_text(gen.header, encoding='utf-8')

        return Artifacts(target=target, svd=svd_path, patched=patched_path, source=source_path)


def build(config: BuildConfig, toolchain: Optional[Toolchain] = None) -> Dict[str, Artifacts]:
    """Build every target selected by config."""
    return Builder(config, toolchain).run()
