#!/usr/bin/env python3
"""CLI wrapper for the home-screen icon pipeline.

Usage:
    python icon_cli.py --image home1.png --image home2.png --theme "neon cyberpunk"
    python icon_cli.py --labels "Mail, Safari, Notes" --theme "pastel watercolor"
    python icon_cli.py --image home1.png --extract-only
"""

from __future__ import annotations

import argparse
import json
import os
import sys
import time
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

load_dotenv()

import log_setup
import costs
import icon_core
from icon_errors import IconServiceError
from icon_http import DEFAULT_BASE_URL, ApiClient

MAX_IMAGES = 5

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2
EXIT_CANCELLED = 130

SHORTCUT_STEPS = [
    "Open the Shortcuts app on your iPhone",
    "Tap the + button to create a new shortcut",
    "Add the 'Open App' action",
    "Choose the app you want to customize",
    "Tap the share button and 'Add to Home Screen'",
    "Tap the icon next to the shortcut name",
    "Choose 'Select Photo' and pick your custom icon",
    "Name the shortcut the same as the original app",
    "Tap 'Add' to create the custom icon on your home screen",
]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Read app names off iPhone home-screen screenshots and generate themed icons",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python icon_cli.py --image home1.png --theme "neon cyberpunk"
  python icon_cli.py --labels "Mail, Safari" --theme "retro pixel art" --json
  python icon_cli.py --image home1.png --image home2.png --extract-only
""",
    )
    parser.add_argument(
        "--image",
        action="append",
        default=[],
        metavar="PATH",
        help=f"Home-screen screenshot (repeatable, up to {MAX_IMAGES})",
    )
    parser.add_argument("--labels", default=None, help="Comma-separated app names; skips extraction")
    parser.add_argument("--theme", default=None, help="Icon style, e.g. 'minimalist' or 'retro'")
    parser.add_argument("--extract-only", action="store_true", help="Print extracted app names and exit")
    parser.add_argument(
        "--output-dir",
        default="cli_output",
        help="Directory to save icons (default: cli_output)",
    )
    parser.add_argument(
        "--vision-model",
        default=icon_core.DEFAULT_VISION_MODEL,
        help=f"Model used to read the screenshots (default: {icon_core.DEFAULT_VISION_MODEL})",
    )
    parser.add_argument(
        "--image-model",
        default=icon_core.DEFAULT_IMAGE_MODEL,
        help=f"Model used to draw the icons (default: {icon_core.DEFAULT_IMAGE_MODEL})",
    )
    parser.add_argument(
        "--min-interval",
        type=float,
        default=icon_core.MIN_REQUEST_INTERVAL,
        help=f"Seconds between icon requests (default: {icon_core.MIN_REQUEST_INTERVAL:.0f})",
    )
    parser.add_argument(
        "--max-rate-limit-retries",
        type=int,
        default=None,
        help="Give up on an icon after this many 429s (default: retry forever)",
    )
    parser.add_argument("--drop-empty", action="store_true", help="Ignore empty entries in the extracted list")
    parser.add_argument("--json", action="store_true", help="Print a JSON summary to stdout")
    parser.add_argument("--list-models", action="store_true", help="List available models and exit")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging on the console")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    log_setup.configure("DEBUG" if args.verbose else "WARNING")

    api_key = os.environ.get("OPENAI_API_KEY", "")
    if not api_key:
        print("✗  OPENAI_API_KEY not set", file=sys.stderr)
        return EXIT_CONFIG
    base_url = os.environ.get("OPENAI_BASE_URL") or DEFAULT_BASE_URL

    if args.list_models:
        _list_models(ApiClient(api_key, base_url=base_url))
        return EXIT_OK

    if args.labels is None and not args.image:
        parser.error("--image or --labels is required")
    if args.labels is not None and args.image:
        parser.error("--image and --labels are mutually exclusive")
    if len(args.image) > MAX_IMAGES:
        parser.error(f"at most {MAX_IMAGES} images per run")
    if args.extract_only and not args.image:
        parser.error("--extract-only needs --image")
    if not args.extract_only and not (args.theme or "").strip():
        parser.error("--theme is required")

    images: List[icon_core.SourceImage] = []
    for p in args.image:
        path = Path(p)
        if not path.is_file():
            print(f"✗  No such file: {path}", file=sys.stderr)
            return EXIT_CONFIG
        images.append(icon_core.SourceImage.from_path(path))

    settings = {
        "vision_model": args.vision_model,
        "image_model": args.image_model,
        "min_interval": args.min_interval,
        "max_rate_limit_retries": args.max_rate_limit_retries,
        "drop_empty_labels": args.drop_empty,
        "base_url": base_url,
    }

    run_id = f"cli-{int(time.time())}"
    cost_tracker = costs.CostTracker()
    pipeline = icon_core.IconPipeline(
        run_id=run_id,
        api_key=api_key,
        settings=settings,
        progress_cb=_progress_cb,
        cost_tracker=cost_tracker,
    )

    if args.extract_only:
        try:
            labels = pipeline.extract_labels(images)
        except IconServiceError as exc:
            print(f"\n✗  {exc.user_message()}", file=sys.stderr)
            return EXIT_FAILED
        if args.json:
            print(json.dumps({"labels": labels}, indent=2))
        else:
            for label in labels:
                print(label)
        return EXIT_OK

    theme = args.theme.strip()
    _echo("\n  ✦ Home Screen Icon Builder")
    _echo(f"  Theme   : {theme}")
    _echo(f"  Source  : {len(images)} screenshot(s)" if images else f"  Source  : {args.labels}")
    _echo(f"  Models  : {args.vision_model} / {args.image_model}")
    _echo(f"  Pacing  : one icon every {args.min_interval:.0f}s\n")

    start = time.time()
    try:
        if images:
            result = pipeline.run(images, theme)
        else:
            labels = icon_core.parse_labels(args.labels, drop_empty=args.drop_empty)
            result = pipeline.generate_icons(labels, theme)
    except KeyboardInterrupt:
        # Ctrl-C lands mid-sleep; keep what finished
        pipeline.cancel()
        run = pipeline.current_run
        result = icon_core.PipelineResult(
            run_id=run_id,
            status="cancelled",
            labels=list(run.labels) if run else [],
            icons=run.results() if run else [],
            duration=time.time() - start,
        )
        _echo("\n  – Cancelled")

    output_dir = Path(args.output_dir) / f"{_dir_slug(theme)}_{int(time.time())}"
    paths = icon_core.save_icons(result.icons, output_dir) if result.icons else []
    costs.append_cost_log(run_id, theme, result.duration, cost_tracker)
    cost_summary = cost_tracker.summary()

    _echo("\n  ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━")
    _echo(f"  Status  : {result.status}")
    _echo(f"  Icons   : {len(result.icons)}/{len(result.labels)} generated")
    _echo(f"  Duration: {result.duration:.1f}s")
    _echo(f"  Cost    : ~${cost_summary['total']:.4f}")
    if paths:
        _echo(f"  Output  : {output_dir}")
    _echo("")

    if args.json:
        print(json.dumps({
            "run_id": run_id,
            "status": result.status,
            "duration": round(result.duration, 3),
            "labels": result.labels,
            "icons": {a.index: {"label": label, "path": str(p)} for (label, a), p in zip(result.icons, paths)},
            "error": result.error.user_message() if result.error else None,
        }, indent=2))

    if result.status == "cancelled":
        return EXIT_CANCELLED
    if not result.ok:
        print(f"✗  {result.error.user_message() if result.error else 'Run failed'}", file=sys.stderr)
        return EXIT_FAILED

    _echo("  Icons saved successfully! To use them:")
    for n, step in enumerate(SHORTCUT_STEPS, start=1):
        _echo(f"    {n}. {step}")
    _echo("")
    return EXIT_OK


def _progress_cb(event: dict) -> None:
    status = event.get("status", "")
    msg = event.get("message", "")
    prefix = {
        "started":      "  ◌ ",
        "completed":    "  ✓ ",
        "complete":     "  ✓ ",
        "failed":       "  ✗ ",
        "retrying":     "  ⚠ ",
        "rate_limited": "  ⚠ ",
        "cancelled":    "  – ",
    }.get(status, "    ")
    _echo(f"{prefix}{msg}")


def _list_models(client: ApiClient) -> None:
    models = icon_core.fetch_models(client)
    print("\nVision Models (app-name extraction)")
    print("─" * 40)
    for m in models["vision"]:
        print(f"  {m['id']}{'  (default)' if m.get('default') else ''}")
    print("\nImage Models (icon generation)")
    print("─" * 40)
    for m in models["image"]:
        print(f"  {m['id']}{'  (default)' if m.get('default') else ''}")
    print()


def _dir_slug(theme: str) -> str:
    return "".join(c if c.isalnum() else "_" for c in theme.lower()).strip("_")[:40] or "icons"


def _echo(msg: str) -> None:
    # stdout is kept for labels and --json output
    print(msg, file=sys.stderr, flush=True)


if __name__ == "__main__":
    raise SystemExit(main())
