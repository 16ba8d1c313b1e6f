"""Build configuration.

The orchestrator only ever sees a BuildConfig. The classmethods below are the
adapters that build one from the process environment or a YAML file; they
are meant to be called once, at the process boundary.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Iterable, Mapping, Optional

from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError

from pacgen.errors import ConfigurationError

ALL_TARGETS = 'all_mcus'
FEATURE_PREFIX = 'PACGEN_FEATURE_'
ROOT_VARIABLE = 'PACGEN_ROOT'
OUT_DIR_VARIABLE = 'PACGEN_OUT_DIR'


def normalize_features(features: Iterable[str]) -> frozenset:
    return frozenset(f.lower() for f in features)


@dataclass(frozen=True)
class BuildConfig:
    root: Path
    out_dir: Path
    features: frozenset = field(default_factory=frozenset)

    def __post_init__(self) -> None:
        object.__setattr__(self, 'root', Path(self.root))
        object.__setattr__(self, 'out_dir', Path(self.out_dir))
        object.__setattr__(self, 'features', normalize_features(self.features))

    @property
    def vendor_dir(self) -> Path:
        return self.root / 'vendor'

    @property
    def patch_dir(self) -> Path:
        return self.root / 'patch'

    @property
    def svd_dir(self) -> Path:
        return self.out_dir / 'svd'

    @property
    def all_targets(self) -> bool:
        return ALL_TARGETS in self.features

    def with_features(self, features: Iterable[str]) -> 'BuildConfig':
        return replace(self, features=self.features | normalize_features(features))

    @classmethod
    def from_environ(cls, environ: Optional[Mapping[str, str]] = None) -> 'BuildConfig':
        """Build the configuration from PACGEN_* environment variables.

        Every PACGEN_FEATURE_<NAME> variable enables the flag <name>.
        """
        environ = os.environ if environ is None else environ
        root = Path(environ.get(ROOT_VARIABLE) or os.getcwd())
        out_dir = Path(environ.get(OUT_DIR_VARIABLE) or root / 'build')
        features = [k[len(FEATURE_PREFIX):] for k in environ if k.startswith(FEATURE_PREFIX)]
        return cls(root=root, out_dir=out_dir, features=features)

    @classmethod
    def load(cls, path: Path, base: Optional['BuildConfig'] = None) -> 'BuildConfig':
        """Read a YAML config file with optional root, out_dir and features keys.

        Relative paths are taken relative to the file. Values from the file
        override those of base; features are merged.
        """
        path = Path(path)
        yaml = YAML(typ='safe')
        try:
            data = yaml.load(path) or {}
        except (OSError, YAMLError) as e:
            raise ConfigurationError(f"unable to read config {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError(f"config {path} must contain a mapping")

        here = path.resolve().parent
        root = here / data['root'] if 'root' in data else (base.root if base else here)
        if 'out_dir' in data:
            out_dir = here / data['out_dir']
        else:
            out_dir = base.out_dir if base else root / 'build'
        features = list(data.get('features') or [])
        if base is not None:
            features += list(base.features)
        return cls(root=root, out_dir=out_dir, features=features)
