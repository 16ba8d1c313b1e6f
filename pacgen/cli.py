"""Command line front end.

Usage:
    pacgen build [--root DIR] [--out-dir DIR] [--config FILE] [-f MCU ...] [--all-mcus]
    pacgen list [--root DIR]
    pacgen atdf2svd <atdf> [-o OUT] [--fixup NAME ...]
    pacgen patch <svd> <patch.yaml> [-o OUT]
    pacgen generate <svd> [-o OUT] [--target T] [--make-mod] [--generic-mod] [--strict]

Flags can also be set through PACGEN_FEATURE_<NAME> environment variables,
and the directories through PACGEN_ROOT and PACGEN_OUT_DIR.
"""

import argparse
import logging
import os
import sys
from pathlib import Path

from pacgen import __version__
from pacgen.build import Builder, scan_vendor_dir
from pacgen.config import ALL_TARGETS, OUT_DIR_VARIABLE, ROOT_VARIABLE, BuildConfig
from pacgen.errors import BuildError, ConfigurationError
from pacgen.generators import cxx
from pacgen.log import setup_logging
from pacgen.parsers import atdf
from pacgen.tools import patch as svdpatch
from pacgen.tools import svd

log = logging.getLogger(__name__)

TOOL_ERRORS = (atdf.AtdfError, svd.SvdError, svdpatch.SvdPatchError, cxx.GeneratorError, OSError)


def _config(args):
    """Build the BuildConfig from the environment, overridden by the command line."""
    environ = dict(os.environ)
    if args.root:
        environ[ROOT_VARIABLE] = str(args.root)
    if args.out_dir:
        environ[OUT_DIR_VARIABLE] = str(args.out_dir)
    config = BuildConfig.from_environ(environ)
    if getattr(args, 'config', None):
        config = BuildConfig.load(args.config, base=config)
    features = list(getattr(args, 'feature', None) or [])
    if getattr(args, 'all_mcus', False):
        features.append(ALL_TARGETS)
    return config.with_features(features)


def cmd_build(args):
    try:
        config = _config(args)
        results = Builder(config).run()
    except ConfigurationError as e:
        print(f"Error: {e}", file=sys.stderr)
        if e.available:
            print("Supported MCUs:\n\t" + "\n\t".join(e.available), file=sys.stderr)
        return 1
    except BuildError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    for target, artifacts in sorted(results.items()):
        print(f"{target}: {artifacts.source}")
    return 0


def cmd_list(args):
    config = _config(args)
    for name in sorted(scan_vendor_dir(config.vendor_dir)):
        print(name)
    return 0


def cmd_atdf2svd(args):
    out = args.output or args.atdf.with_suffix('.svd')
    try:
        chip = atdf.parse(args.atdf, frozenset(args.fixup or []))
        with open(out, 'w', encoding='utf-8') as f:
            svd.generate(chip, f)
    except TOOL_ERRORS as e:
        print(f"Error: unable to convert {args.atdf}: {e}", file=sys.stderr)
        return 1
    print(out)
    return 0


def cmd_patch(args):
    out = args.output or Path(str(args.svd) + '.patched')
    try:
        text = svdpatch.process_file(args.svd, svdpatch.load_patch(args.patch))
        out.write_text(text, encoding='utf-8')
    except TOOL_ERRORS as e:
        print(f"Error: unable to apply patch {args.patch}: {e}", file=sys.stderr)
        return 1
    print(out)
    return 0


def cmd_generate(args):
    config = cxx.Config(
        target=args.target,
        make_mod=args.make_mod,
        generic_mod=args.generic_mod,
        strict=args.strict,
        log_level=args.log_level,
    )
    try:
        gen = cxx.generate(args.svd.read_bytes(), config)
        out = args.output or args.svd.with_name(cxx.namespaceName(gen.device) + '.hpp')
        out.write_text(gen.header, encoding='utf-8')
    except TOOL_ERRORS as e:
        print(f"Error: unable to generate bindings from {args.svd}: {e}", file=sys.stderr)
        return 1
    print(out)
    return 0


def build_parser():
    ap = argparse.ArgumentParser(prog='pacgen', description='Generate register bindings from vendor device files.')
    ap.add_argument('--version', action='version', version=f"%(prog)s {__version__}")
    ap.add_argument('-v', '--verbose', action='store_true', help='show debug output')
    ap.add_argument('-q', '--quiet', action='store_true', help='only show warnings and errors')
    sub = ap.add_subparsers(dest='command', required=True)

    def add_paths(p):
        p.add_argument('--root', type=Path, help=f'project root holding vendor/ and patch/ (${ROOT_VARIABLE})')
        p.add_argument('--out-dir', type=Path, help=f'output directory (${OUT_DIR_VARIABLE})')

    p = sub.add_parser('build', help='run the full pipeline for the selected MCUs')
    add_paths(p)
    p.add_argument('--config', type=Path, help='YAML file with root, out_dir and features')
    p.add_argument('-f', '--feature', action='append', metavar='MCU', help='enable an MCU (repeatable)')
    p.add_argument('--all-mcus', action='store_true', help='build every supported MCU')
    p.set_defaults(func=cmd_build)

    p = sub.add_parser('list', help='list the supported MCUs')
    add_paths(p)
    p.set_defaults(func=cmd_list)

    p = sub.add_parser('atdf2svd', help='convert an ATDF file to SVD')
    p.add_argument('atdf', type=Path)
    p.add_argument('-o', '--output', type=Path)
    p.add_argument('--fixup', action='append', choices=sorted(atdf.FIXUPS))
    p.set_defaults(func=cmd_atdf2svd)

    p = sub.add_parser('patch', help='apply a YAML patch to an SVD file')
    p.add_argument('svd', type=Path)
    p.add_argument('patch', type=Path)
    p.add_argument('-o', '--output', type=Path)
    p.set_defaults(func=cmd_patch)

    p = sub.add_parser('generate', help='generate a C++ header from an SVD file')
    p.add_argument('svd', type=Path)
    p.add_argument('-o', '--output', type=Path)
    p.add_argument('--target', choices=[t.value for t in cxx.Target], default=cxx.Target.NONE.value)
    p.add_argument('--make-mod', action='store_true', help='emit a C++20 module')
    p.add_argument('--generic-mod', action='store_true', help='emit the generic register templates inline')
    p.add_argument('--strict', action='store_true', help='fail on names and layouts that need fixing up')
    p.add_argument('--log-level', default=None)
    p.set_defaults(func=cmd_generate)
    return ap


def main(argv=None):
    args = build_parser().parse_args(argv)
    level = 'DEBUG' if args.verbose else ('WARNING' if args.quiet else 'INFO')
    setup_logging(level, quiet=args.quiet)
    return args.func(args)
