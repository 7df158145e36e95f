"""
Command-line entry point.

Usage:
    stylescope track.wav
    stylescope track.mp3 --max-duration 60 -o report.json --log-level DEBUG
"""

import argparse
import sys
from pathlib import Path

from stylescope.config import ConfigurationError, EngineConfig
from stylescope.io.exporter import DecisionExporter
from stylescope.logging_utils import configure_logging
from stylescope.pipeline import DecisionEngine


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Detect the musical style of an audio file"
    )

    parser.add_argument(
        "audio",
        type=Path,
        help="Input audio file (wav, mp3, flac)",
    )

    parser.add_argument(
        "-o", "--output",
        type=Path,
        default=None,
        help="Write the JSON report here instead of stdout",
    )

    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="JSON file with engine configuration overrides",
    )

    parser.add_argument(
        "--sr",
        type=int,
        default=22050,
        help="Analysis sample rate (default: 22050)",
    )

    parser.add_argument(
        "--max-duration",
        type=float,
        default=None,
        help="Only analyze the first N seconds",
    )

    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level (default: WARNING)",
    )

    return parser


def main(argv=None) -> int:
    """CLI entry point."""
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level)

    if not args.audio.exists():
        print(f"Error: Audio file not found: {args.audio}", file=sys.stderr)
        return 1

    try:
        config = EngineConfig.load(args.config) if args.config else EngineConfig()
    except (OSError, ValueError) as exc:
        # ConfigurationError and json.JSONDecodeError are both ValueErrors
        kind = "Invalid configuration" if isinstance(exc, ConfigurationError) else "Cannot read configuration"
        print(f"Error: {kind}: {exc}", file=sys.stderr)
        return 2

    engine = DecisionEngine(config)
    report = engine.analyze_file(args.audio, sr=args.sr, max_duration=args.max_duration)

    exporter = DecisionExporter()
    if args.output is not None:
        exporter.export_json(report, args.output)
        style = report.final_style
        print(f"{args.audio.name}: {style.label} ({style.confidence:.2f}) -> {args.output}")
    else:
        print(exporter.to_json(report))
    return 0


if __name__ == "__main__":
    sys.exit(main())
