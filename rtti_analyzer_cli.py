#!/usr/bin/env python3
"""
MSVC RTTI Analyzer - Main Entry Point

Scans an x64 MSVC image for RTTI and prints its classes and virtual functions.
"""

import sys
import argparse
from pathlib import Path

# Load .env before any rtti_analyzer imports (so RTTI_* layout overrides are set)
try:
    from dotenv import load_dotenv
    load_dotenv()
except ImportError:
    pass

# Add rtti_analyzer to path
sys.path.insert(0, str(Path(__file__).parent))


def _detect_format(path: str) -> str:
    with open(path, 'rb') as f:
        magic = f.read(4)
    if magic == b'MDMP':
        return 'minidump'
    if magic[:2] == b'MZ':
        return 'pe'
    return 'raw'


def load_image(args, parser):
    """Open the target according to --format (auto-detected by default)."""
    from rtti_analyzer.config import load_layout
    from rtti_analyzer.image_loader import load_minidump_image, load_pe_image, load_raw_image

    fmt = args.format
    if fmt == 'auto':
        fmt = _detect_format(args.image)

    explicit_layout = args.profile is not None or args.layout_from_config
    layout = load_layout(args.profile, use_env=not args.no_env).validate()

    if fmt == 'raw':
        if args.base is None:
            parser.error("raw images require --base")
        return load_raw_image(args.image, args.base, layout)
    if fmt == 'pe':
        return load_pe_image(args.image, args.base, layout if explicit_layout else None)
    return load_minidump_image(args.image, args.module, layout if explicit_layout else None)


def _address(value: str) -> int:
    try:
        return int(value, 0)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not an address: {value}")


def main(argv=None):
    parser = argparse.ArgumentParser(
        description='MSVC RTTI Analyzer - Recover C++ classes and vtables from x64 images',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Dump every class of a PE file
  %(prog)s dump SkyrimSE.exe -o classes.txt

  # Dump from a raw memory image using a layout profile
  %(prog)s dump image.bin --base 0x140000000 --profile skyrim_1_6_659.json

  # Dump a module from a full-memory minidump
  %(prog)s dump crash.dmp --module SkyrimSE.exe

  # Show the module summary
  %(prog)s summary SkyrimSE.exe

  # Describe one vtable
  %(prog)s vtable SkyrimSE.exe --address 0x141613328
        """
    )

    parser.add_argument(
        'command',
        choices=['dump', 'summary', 'vtable', 'test'],
        help='Command to execute'
    )

    parser.add_argument(
        'image',
        nargs='?',
        help='Path to the image (.exe/.dll, raw memory image or .dmp)'
    )

    parser.add_argument(
        '--format',
        choices=['auto', 'pe', 'raw', 'minidump'],
        default='auto',
        help='Image format (default: detect from the file header)'
    )

    parser.add_argument(
        '--base',
        type=_address,
        help='Module base address (required for raw images)'
    )

    parser.add_argument(
        '--module',
        help='Module name inside a minidump (default: first module)'
    )

    parser.add_argument(
        '--profile',
        help='JSON layout profile with segment and well-known offsets'
    )

    parser.add_argument(
        '--layout-from-config',
        action='store_true',
        help='Use the configured layout for PE/minidump images instead of the section table'
    )

    parser.add_argument(
        '--no-env',
        action='store_true',
        help='Ignore RTTI_* environment variables'
    )

    parser.add_argument(
        '--auto-type-info',
        action='store_true',
        help="Locate type_info's vftable from its TypeDescriptor"
    )

    parser.add_argument(
        '--address',
        type=_address,
        help='Vtable address for the vtable command'
    )

    parser.add_argument(
        '--output',
        '-o',
        help='Output file for results (default: console)'
    )

    parser.add_argument(
        '--verbose',
        '-v',
        action='store_true',
        help='Print progress messages'
    )

    args = parser.parse_args(argv)

    if args.command == 'test':
        print("Running test suite...")
        import pytest
        sys.exit(pytest.main(['tests/', '-v']))

    if not args.image:
        parser.error(f"{args.command} command requires an image argument")
    if args.command == 'vtable' and args.address is None:
        parser.error("vtable command requires --address")

    from rtti_analyzer.config import LayoutError
    from rtti_analyzer.core import RttiAnalyzer, safe_print
    from rtti_analyzer.image_loader import ImageLoadError, module_summary

    try:
        image = load_image(args, parser)
    except (ImageLoadError, LayoutError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    report = None
    if args.command == 'summary':
        lines = module_summary(image)
    else:
        try:
            analyzer = RttiAnalyzer.for_image(image, auto_type_info=args.auto_type_info,
                                              verbose=args.verbose)
        except LayoutError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1
        if args.command == 'vtable':
            lines = analyzer.describe_vtable(args.address)
        else:
            report = analyzer.analyze()
            lines = module_summary(image) + report.lines

    if args.output:
        with open(args.output, 'w', encoding='utf-8') as f:
            for line in lines:
                f.write(line + "\n")
        if report is not None:
            print(f"Found {report.type_count} types with {report.vtable_count} vtables")
        print(f"Results saved to: {args.output}")
    else:
        for line in lines:
            safe_print(line)
    return 0


if __name__ == '__main__':
    sys.exit(main())
