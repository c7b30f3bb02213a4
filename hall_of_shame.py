#!/usr/bin/env python3
# =============================================================================
# Memory Hall of Shame
# =============================================================================
#
# Lists every Cloud Foundry app visible to the current login, compares the
# memory each app is allocated with the memory its instances actually use,
# and prints the apps ranked by allocation / average use (most wasteful first).
#
# Usage:
#   hall-of-shame [--max-concurrent N] [--format table|json] [options]
#   hall-of-shame --transport api --api-url https://api.example.com [options]
#
# =============================================================================

import argparse
import json
import os
import sys
import traceback

from rich.console import Console
from rich.table import Table
from tqdm import tqdm

from collect_stats import (
    DEFAULT_TIMEOUT,
    ApiChannel,
    CfCliChannel,
    CommandChannelError,
    WorkloadListingError,
    detect_api_url,
    get_oauth_token,
    list_workloads,
)
from rank_workloads import (
    DEFAULT_MAX_CONCURRENT,
    TABLE_HEADERS,
    NullProgress,
    aggregate_usage,
    rank_by_ratio,
)

# ===============================
# Configuration
# ===============================
DEFAULT_FORMAT = "table"
DEFAULT_TRANSPORT = "cli"
MAX_CONCURRENT_ENV = "HALL_OF_SHAME_MAX_CONCURRENT"
FINISH_MESSAGE = "Done!"
MAX_TABLE_WIDTH = 10000


def validate_positive_integer(value):
    try:
        val = int(value)
        if val <= 0:
            raise ValueError("Value must be a positive integer.")
        return val
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid value '{value}'. Please enter a positive integer.")


def validate_positive_float(value):
    try:
        val = float(value)
        if val <= 0:
            raise ValueError("Value must be positive.")
        return val
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid value '{value}'. Please enter a positive number.")


def default_max_concurrent():
    """Concurrency bound from HALL_OF_SHAME_MAX_CONCURRENT, else the built-in default."""
    raw = os.environ.get(MAX_CONCURRENT_ENV, "").strip()
    if not raw:
        return DEFAULT_MAX_CONCURRENT
    try:
        value = int(raw)
    except ValueError:
        print(f"Warning: Ignoring invalid {MAX_CONCURRENT_ENV}={raw!r}.", file=sys.stderr)
        return DEFAULT_MAX_CONCURRENT
    if value < 1:
        print(f"Warning: Ignoring invalid {MAX_CONCURRENT_ENV}={raw!r}.", file=sys.stderr)
        return DEFAULT_MAX_CONCURRENT
    return value


# ===============================
# Progress and Output
# ===============================
class TqdmProgress:
    """Progress bar on stderr, advanced once per processed app"""

    def __init__(self):
        self.bar = None

    def start(self, total):
        self.bar = tqdm(total=total, unit="app", file=sys.stderr)

    def increment(self):
        self.bar.update(1)

    def finish(self, message):
        if self.bar is not None:
            self.bar.close()
        print(message, file=sys.stderr)


def build_table(ranked):
    table = Table(show_header=True, header_style="bold")
    for header in TABLE_HEADERS:
        if header in ("Name", "Space"):
            table.add_column(header, justify="left", no_wrap=True)
        else:
            table.add_column(header, justify="right", no_wrap=True)
    for summary in ranked:
        table.add_row(*summary.to_row())
    return table


def render_table(ranked, stream):
    table = build_table(ranked)
    console = Console(file=stream)
    # Widen past the terminal rather than truncate names and GUIDs
    natural = console.measure(table, options=console.options.update_width(MAX_TABLE_WIDTH)).maximum
    console.width = max(console.width, natural)
    console.print(table)


def render_json(ranked, stream):
    json.dump([summary.to_dict() for summary in ranked], stream, indent=2)
    stream.write("\n")


RENDERERS = {
    "table": render_table,
    "json": render_json,
}


def write_output(ranked, output_format, output_path=None):
    renderer = RENDERERS[output_format]
    if not output_path:
        renderer(ranked, sys.stdout)
        return

    if os.path.exists(output_path):
        backup_file = f"{output_path}.bak"
        print(f"Creating backup of existing output file: {backup_file}", file=sys.stderr)
        try:
            os.replace(output_path, backup_file)
        except OSError as e:
            print(f"Warning: Could not create backup file {backup_file}: {str(e)}", file=sys.stderr)

    with open(output_path, "w") as f:
        renderer(ranked, f)
    print(f"Results saved to {output_path}", file=sys.stderr)


# ===============================
# Main CLI
# ===============================
def build_parser():
    parser = argparse.ArgumentParser(
        prog="hall-of-shame",
        description="Memory Hall of Shame - rank apps by allocated vs. used memory",
    )
    parser.add_argument("-org", dest="org", help="Specify the org to report (accepted, not yet applied)")
    parser.add_argument("-space", dest="space", help="Specify the space to report (requires -org; accepted, not yet applied)")
    parser.add_argument("--transport", choices=["cli", "api"], default=DEFAULT_TRANSPORT,
                        help=f"Reach the API through 'cf curl' or directly over HTTPS (default: {DEFAULT_TRANSPORT})")
    parser.add_argument("--api-url", help="Cloud Controller URL for --transport api (read from the cf config if not provided)")
    parser.add_argument("--token", help="OAuth token for --transport api (taken from 'cf oauth-token' if not provided)")
    parser.add_argument("--verify-ssl", action="store_true", help="Verify SSL certs for --transport api (default: False)")
    parser.add_argument("--max-concurrent", type=validate_positive_integer, default=None,
                        help=f"Stats requests in flight at once (default: ${MAX_CONCURRENT_ENV} or {DEFAULT_MAX_CONCURRENT})")
    parser.add_argument("--timeout", type=validate_positive_float, default=DEFAULT_TIMEOUT,
                        help=f"Seconds allowed per API request (default: {DEFAULT_TIMEOUT})")
    parser.add_argument("--strict", action="store_true", help="Abort if the app list cannot be retrieved instead of continuing with what was returned")
    parser.add_argument("--all-pages", action="store_true", help="Follow pagination when listing apps (default: first page only)")
    parser.add_argument("--format", choices=sorted(RENDERERS), default=DEFAULT_FORMAT, help=f"Output format (default: {DEFAULT_FORMAT})")
    parser.add_argument("--output", help="Write results to this file instead of stdout")
    parser.add_argument("--quiet", action="store_true", help="Hide the progress bar and informational messages")
    return parser


def build_channel(args):
    if args.transport == "cli":
        return CfCliChannel(timeout=args.timeout)

    api_url = args.api_url or detect_api_url()
    if not api_url:
        raise CommandChannelError("No Cloud Controller URL available. Use --api-url or run 'cf api <url>'.")
    token = args.token or get_oauth_token(timeout=args.timeout)
    if not token:
        raise CommandChannelError("No OAuth token available. Use --token or run 'cf login'.")
    if not args.verify_ssl:
        print("Warning: Sending the OAuth token without SSL certificate verification. Use --verify-ssl to enable it.",
              file=sys.stderr)
    return ApiChannel(api_url, token, verify_ssl=args.verify_ssl, timeout=args.timeout)


def run(args):
    def info(message):
        if not args.quiet:
            print(message, file=sys.stderr)

    if args.org or args.space:
        print("Warning: -org/-space are accepted but not applied; reporting every visible app.", file=sys.stderr)

    max_concurrent = args.max_concurrent or default_max_concurrent()
    channel = build_channel(args)

    info("Listing apps...")
    workloads = list_workloads(channel, strict=args.strict, all_pages=args.all_pages)
    info(f"Fetching stats for {len(workloads)} apps ({max_concurrent} at a time)...")

    progress = NullProgress() if args.quiet else TqdmProgress()
    summaries = aggregate_usage(channel, workloads, max_concurrent=max_concurrent, progress=progress)
    progress.finish(FINISH_MESSAGE)

    ranked = rank_by_ratio(summaries)
    write_output(ranked, args.format, args.output)
    return ranked


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.space and not args.org:
        parser.error("-space requires -org")

    try:
        run(args)
    except (WorkloadListingError, CommandChannelError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    except Exception as e:
        print(f"\nAn unhandled error occurred: {str(e)}", file=sys.stderr)
        traceback.print_exc()
        sys.exit(1)


if __name__ == "__main__":
    main()
