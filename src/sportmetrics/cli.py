"""
Command line entry point.

Commands:
- simulate: record a synthetic capture session to a take file
- replay: replay a take through the metrics pipeline and print metrics
- validate: check a take file
- list-takes: list saved takes or the bundled samples
- sports: list the sports in a catalog
"""

import argparse
import json
import logging
import sys
from typing import Optional, List

from .config import (
    ConnectionSettings, ReplaySettings, SportCatalog, DEFAULT_TAKE_DIR,
    parse_play_speed
)
from .metrics import MetricsData, MetricsExporter
from .pipeline import MetricsPipeline
from .recorder import list_sample_takes, list_take_files, sample_take_path
from .replay import validate_take_integrity
from .source import ConnectionType, DummySource, DummySourceConfig


def _err(msg: str) -> int:
    print(f"error: {msg}", file=sys.stderr)
    return 2


def cmd_simulate(args: argparse.Namespace) -> int:
    if args.frames <= 0:
        return _err("--frames must be > 0")
    if args.fps <= 0:
        return _err("--fps must be > 0")

    source = DummySource(DummySourceConfig(
        rigid_bodies=tuple(args.rigid_body),
        skeletons=tuple(args.skeleton),
        fps=args.fps,
        seed=args.seed,
        max_frames=args.frames,
    ))
    pipeline = MetricsPipeline(source=source, take_dir=args.out_dir)
    settings = ConnectionSettings(connection_type=ConnectionType.UNICAST, source="dummy")

    pipeline.start_recording()
    if not pipeline.connect(settings):
        pipeline.stop_recording()
        return _err("could not connect to the simulated server")

    source.join(timeout=args.frames / args.fps + 5.0)
    pipeline.process_pending()
    path = pipeline.stop_recording()
    pipeline.disconnect()

    status = pipeline.get_status()
    print(json.dumps({
        "take": str(path),
        "frames": status["frames_processed"],
        "duplicates_dropped": status["buffer"]["duplicates_dropped"],
    }))
    return 0


def cmd_replay(args: argparse.Namespace) -> int:
    try:
        speed = parse_play_speed(args.speed)
    except ValueError as e:
        return _err(str(e))

    try:
        catalog = SportCatalog.load(args.sports_file)
    except (OSError, ValueError) as e:
        return _err(f"cannot load sports catalog: {e}")
    if catalog.get(args.sport) is None:
        return _err(f"unknown sport {args.sport!r}; choose from {catalog.sport_names()}")

    pipeline = MetricsPipeline(
        naming_convention=args.naming_convention,
        replay_base_interval=args.base_interval,
    )
    pipeline.set_sport(catalog, args.sport)

    if not pipeline.load_take(args.take):
        return _err(f"cannot load take {args.take}")

    take = pipeline.loaded_take
    rigid_body = args.rigid_body
    skeleton = args.skeleton
    if rigid_body is None and take.maps.rigid_bodies:
        rigid_body = take.maps.rigid_bodies[min(take.maps.rigid_bodies)]
    if skeleton is None and take.maps.skeletons:
        skeleton = take.maps.skeletons[min(take.maps.skeletons)]
    pipeline.select_assets(rigid_body, skeleton)

    def on_metrics(rb_metrics: MetricsData, skel_metrics: MetricsData) -> None:
        if rb_metrics.is_empty and skel_metrics.is_empty:
            return
        if args.metrics_out:
            MetricsExporter.to_jsonl(rb_metrics, skel_metrics, args.metrics_out)
        else:
            print(json.dumps({
                "rigidBody": rb_metrics.to_dict(),
                "skeleton": skel_metrics.to_dict(),
            }))

    def on_error(e: Exception) -> None:
        print(f"error: {e}", file=sys.stderr)

    pipeline.set_metrics_callback(on_metrics)
    pipeline.set_error_callback(on_error)

    pipeline.start()
    if not pipeline.start_replay(speed):
        pipeline.stop()
        return _err("take has no frames")
    pipeline.wait_for_replay()
    summary = pipeline.stop()
    pipeline.process_pending()

    logging.getLogger(__name__).info(
        "Replayed %d frames in %.2fs", pipeline.frames_processed, summary["duration_seconds"]
    )
    return 0


def cmd_validate(args: argparse.Namespace) -> int:
    result = validate_take_integrity(args.take)
    print(json.dumps(result, indent=2))
    return 0 if result["valid"] else 1


def cmd_list_takes(args: argparse.Namespace) -> int:
    if args.samples:
        for name in list_sample_takes():
            print(sample_take_path(name))
        return 0
    for path in list_take_files(args.take_dir):
        print(path)
    return 0


def cmd_sports(args: argparse.Namespace) -> int:
    try:
        catalog = SportCatalog.load(args.sports_file)
    except (OSError, ValueError) as e:
        return _err(f"cannot load sports catalog: {e}")
    for name in catalog.sport_names():
        print(name)
    return 0


def build_parser() -> argparse.ArgumentParser:
    replay_defaults = ReplaySettings()

    parser = argparse.ArgumentParser(prog="sportmetrics", description="Sports motion capture metrics")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log progress to stderr")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("simulate", help="Record a synthetic session to a take file")
    p.add_argument("--frames", type=int, default=240, help="Number of frames (>0)")
    p.add_argument("--fps", type=float, default=120.0, help="Frames per second (>0)")
    p.add_argument("--seed", type=int, default=0, help="RNG seed")
    p.add_argument("--rigid-body", action="append", default=None, help="Rigid body name (repeatable)")
    p.add_argument("--skeleton", action="append", default=None, help="Skeleton name (repeatable)")
    p.add_argument("--out-dir", type=str, default=DEFAULT_TAKE_DIR, help="Take directory")
    p.set_defaults(func=cmd_simulate)

    p = sub.add_parser("replay", help="Replay a take and print metrics as JSON lines")
    p.add_argument("take", help="Take file")
    p.add_argument("--sport", required=True, help="Sport whose metrics to compute")
    p.add_argument("--sports-file", default=None, help="Sport catalog (default: bundled)")
    p.add_argument("--speed", default=replay_defaults.play_speed, help="Play speed, e.g. 50%%")
    p.add_argument("--base-interval", type=float, default=replay_defaults.base_interval,
                   help="Seconds between frames at 100%% speed")
    p.add_argument("--rigid-body", default=None, help="Rigid body to follow (default: first in take)")
    p.add_argument("--skeleton", default=None, help="Skeleton to follow (default: first in take)")
    p.add_argument("--naming-convention", default="FBX", help="Skeleton naming convention")
    p.add_argument("--metrics-out", default=None, help="Append metrics to this JSONL file")
    p.set_defaults(func=cmd_replay)

    p = sub.add_parser("validate", help="Check a take file")
    p.add_argument("take", help="Take file")
    p.set_defaults(func=cmd_validate)

    p = sub.add_parser("list-takes", help="List saved takes")
    p.add_argument("take_dir", nargs="?", default=replay_defaults.take_dir)
    p.add_argument("--samples", action="store_true", help="List the bundled sample takes instead")
    p.set_defaults(func=cmd_list_takes)

    p = sub.add_parser("sports", help="List sports in a catalog")
    p.add_argument("--sports-file", default=None, help="Sport catalog (default: bundled)")
    p.set_defaults(func=cmd_sports)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    try:
        args = parser.parse_args(argv)
    except SystemExit as e:
        return int(e.code or 0)

    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "simulate":
        if args.rigid_body is None:
            args.rigid_body = list(DummySourceConfig.rigid_bodies)
        if args.skeleton is None:
            args.skeleton = list(DummySourceConfig.skeletons)

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
