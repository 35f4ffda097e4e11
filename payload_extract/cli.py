"""
Android payload.bin extractor
Lists and extracts partition images from full OTA payload.bin files (Brillo/AOSP format)
"""

import sys
import argparse
from pathlib import Path

from .errors import PayloadError
from .session import PayloadSession

IS_INTERACTIVE = sys.stdout.isatty()


# ANSI color codes (only when interactive)
class Colors:
    if IS_INTERACTIVE:
        OKGREEN = '\033[92m'
        WARNING = '\033[93m'
        FAIL = '\033[91m'
        ENDC = '\033[0m'
    else:
        OKGREEN = ''
        WARNING = ''
        FAIL = ''
        ENDC = ''


def print_success(text: str):
    """Print success message"""
    symbol = "✓" if IS_INTERACTIVE else "[OK]"
    print(f"{Colors.OKGREEN}{symbol} {text}{Colors.ENDC}")


def print_warning(text: str):
    """Print warning message"""
    symbol = "⚠" if IS_INTERACTIVE else "[WARNING]"
    print(f"{Colors.WARNING}{symbol} {text}{Colors.ENDC}")


def print_error(text: str):
    """Print error message"""
    symbol = "✗" if IS_INTERACTIVE else "[ERROR]"
    print(f"{Colors.FAIL}{symbol} {text}{Colors.ENDC}", file=sys.stderr)


def format_size(size: int) -> str:
    """Format byte size for display"""
    for unit in ('B', 'KB', 'MB', 'GB'):
        if size < 1024 or unit == 'GB':
            return f"{size:.2f} {unit}" if unit != 'B' else f"{size} B"
        size /= 1024


def show_progress(done: int, total: int):
    print(f"\r  Extracting: {done * 100 // total}% ({done}/{total})", end='', flush=True)


def cmd_list(session: PayloadSession):
    """List partitions"""
    manifest = session.manifest
    partitions = session.list_partitions()

    print(f"Payload: {session.path}")
    print(f"Block size: {manifest.block_size}")
    if manifest.is_delta:
        print_warning(f"Delta payload (minor version {manifest.minor_version}), "
                      "only full operations can be extracted")
    if not partitions:
        print("No partitions found")
        return

    print(f"Partitions: {len(partitions)}\n")
    print(f"{'Name':<24} {'Size':>12} {'Ops':>6}")
    print("-" * 44)
    for info, part in zip(partitions, manifest.partitions):
        print(f"{info.name:<24} {format_size(info.size):>12} {len(part.operations):>6}")


def cmd_extract(session: PayloadSession, names: list[str], output_dir: Path,
                verify: bool = True) -> bool:
    """Extract partitions"""
    available = session.partition_names()

    for name in names:
        if name not in available:
            print_error(f"'{name}' not found. Available: {', '.join(sorted(available))}")
            return False

    output_dir.mkdir(parents=True, exist_ok=True)
    sizes = {p.name: p.size for p in session.list_partitions()}

    for name in names:
        out = output_dir / f"{name}.img"
        print(f"\nExtracting '{name}' ({format_size(sizes[name])}) -> {out}")

        matches = session.extract(name, out, verify=verify, progress=show_progress)
        print()
        if matches > 1:
            print_warning(f"{matches} partitions named '{name}', kept the last one")
        print_success(f"Done: {format_size(out.stat().st_size)}")

    print("\nAll done.")
    return True


def main(argv=None):
    ap = argparse.ArgumentParser(
        prog='payload-extract',
        description='Extract partitions from Android payload.bin',
        epilog="Examples:\n"
               "  %(prog)s payload.bin -l\n"
               "  %(prog)s payload.bin -p boot init_boot\n"
               "  %(prog)s payload.bin -p boot -o ./out\n",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    ap.add_argument('payload', type=Path)
    ap.add_argument('-l', '--list', action='store_true', help='List partitions')
    ap.add_argument('-p', '--partitions', nargs='+', metavar='NAME', help='Extract partition(s)')
    ap.add_argument('-o', '--output', type=Path, default=Path('.'), help='Output directory')
    ap.add_argument('--no-verify', dest='verify', action='store_false',
                    help='Skip the per-operation SHA-256 check')
    args = ap.parse_args(argv)

    if not args.payload.exists():
        sys.exit(f"Error: {args.payload} not found")

    try:
        with PayloadSession(args.payload) as session:
            if args.partitions:
                success = cmd_extract(session, args.partitions, args.output, args.verify)
                sys.exit(0 if success else 1)
            else:
                cmd_list(session)
    except (PayloadError, OSError) as e:
        if args.partitions:
            print()
        print_error(str(e))
        sys.exit(1)


if __name__ == '__main__':
    main()
