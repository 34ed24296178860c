"""
planartrack Command Line Interface

Usage:
    planartrack <command> [options]

Commands:
    track       Track markers through a video
    solve       Solve tracked markers into transform or corner-pin curves
    version     Show version information

Examples:
    planartrack track input.mp4 markers.json -o tracked.json -fs 0 -fe 120
    planartrack track input.mp4 markers.json -o tracked.json --crv-dir crv/
    planartrack solve tracked.json -o curves.json --video input.mp4 --motion stabilize
    planartrack solve tracked.json -o curves.json --size 1920 1080 --type corner_pin
"""

import argparse
import json
import logging
import sys
from pathlib import Path

from planartrack import __version__
from planartrack.core.base import LoggingErrorSink, LoggingProgress, NullProgress, Rect
from planartrack.core.config import Config, MotionType, TransformType, load_config
from planartrack.core.errors import TrackerError
from planartrack.utils.log import setup_logging

logger = logging.getLogger("planartrack.cli")


class FormatOnlySource:
    """Frame source that only knows the frame format; enough for solving."""

    def __init__(self, width: int, height: int):
        self.rect = Rect(0, 0, width, height)

    def get_frame(self, time: int):
        raise RuntimeError("FormatOnlySource has no pixels")

    def format_rect(self, time: int) -> Rect:
        return self.rect


def main():
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog='planartrack',
        description='Planar patch tracking and motion solving',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )

    parser.add_argument(
        '-V', '--version',
        action='version',
        version=f'planartrack {__version__}',
    )

    subparsers = parser.add_subparsers(dest='command', help='Command to run')

    # Track command
    track_parser = subparsers.add_parser(
        'track',
        help='Track markers through a video',
    )
    track_parser.add_argument('input', help='Input video file')
    track_parser.add_argument('markers', help='Marker file (JSON) with user keyframes')
    track_parser.add_argument(
        '-o', '--output',
        required=True,
        help='Output marker file (JSON)',
    )
    track_parser.add_argument(
        '-fs', '--frame-start',
        type=int,
        default=0,
        help='First frame, used as reference only (default: 0)',
    )
    track_parser.add_argument(
        '-fe', '--frame-end',
        type=int,
        default=None,
        help='Last frame, inclusive (default: end of video)',
    )
    track_parser.add_argument(
        '--step',
        type=int,
        default=1,
        help='Frame step, negative to track backwards (default: 1)',
    )
    track_parser.add_argument(
        '--crv-dir',
        default=None,
        help='Also export one .crv file per marker into this directory',
    )
    _add_common_arguments(track_parser)

    # Solve command
    solve_parser = subparsers.add_parser(
        'solve',
        help='Solve tracked markers into transform or corner-pin curves',
    )
    solve_parser.add_argument('markers', help='Tracked marker file (JSON)')
    solve_parser.add_argument(
        '-o', '--output',
        required=True,
        help='Output curve file (JSON)',
    )
    format_group = solve_parser.add_mutually_exclusive_group(required=True)
    format_group.add_argument(
        '--video',
        default=None,
        help='Video whose frame size defines the format',
    )
    format_group.add_argument(
        '--size',
        type=int,
        nargs=2,
        metavar=('WIDTH', 'HEIGHT'),
        default=None,
        help='Frame size in pixels',
    )
    solve_parser.add_argument(
        '--motion',
        choices=[m.name.lower() for m in MotionType if m != MotionType.NONE],
        default=None,
        help='Motion type (default: from config, else match_move)',
    )
    solve_parser.add_argument(
        '--type',
        dest='transform_type',
        choices=[t.name.lower() for t in TransformType],
        default=None,
        help='Output parameter set (default: from config)',
    )
    solve_parser.add_argument(
        '-rf', '--reference-frame',
        type=int,
        default=None,
        help='Reference frame (default: from config)',
    )
    _add_common_arguments(solve_parser)

    # Version command
    subparsers.add_parser(
        'version',
        help='Show version information',
    )

    # Parse arguments
    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        return 0

    if args.command == 'version':
        print(f'planartrack {__version__}')
        return 0

    setup_logging(verbose=args.verbose, quiet=args.quiet, with_steps=args.verbose)

    try:
        if args.command == 'track':
            return run_track(args)
        elif args.command == 'solve':
            return run_solve(args)
    except (TrackerError, FileNotFoundError) as exc:
        logger.error("%s", exc)
        return 1

    parser.print_help()
    return 1


def _add_common_arguments(sub):
    sub.add_argument(
        '-c', '--config',
        default=None,
        help='Configuration file (JSON)',
    )
    sub.add_argument(
        '-v', '--verbose',
        action='store_true',
        help='Log debug output',
    )
    sub.add_argument(
        '-q', '--quiet',
        action='store_true',
        help='Suppress progress output',
    )


def _load_settings(args):
    if args.config:
        return load_config(args.config, use_env=True).settings
    return Config().settings


def run_track(args):
    """Run marker tracking command."""
    from planartrack.core.video import VideoFrameSource
    from planartrack.tracking import TrackScheduler, SessionState
    from planartrack.tracking.track_io import export_marker_crv, load_markers, save_markers

    settings = _load_settings(args)
    markers = load_markers(args.markers)
    progress = NullProgress() if args.quiet else LoggingProgress("track")

    with VideoFrameSource(args.input) as source:
        end = args.frame_end
        if end is None:
            end = source.properties.frame_count - 1 if args.step > 0 else 0
        logger.info("Tracking %d markers in %s, frames %d..%d",
                    len(markers), args.input, args.frame_start, end)

        scheduler = TrackScheduler(source, settings, progress, LoggingErrorSink())
        session = scheduler.track_sequence(markers, args.frame_start, end, args.step)
        try:
            state = session.wait()
        except KeyboardInterrupt:
            session.cancel()
            state = session.wait()

    save_markers(markers, args.output)
    logger.info("Wrote %s", args.output)

    if args.crv_dir:
        crv_dir = Path(args.crv_dir)
        crv_dir.mkdir(parents=True, exist_ok=True)
        for marker in markers:
            count = export_marker_crv(marker, crv_dir / f"{marker.name}.crv")
            logger.info("Exported %d samples of %s", count, marker.name)

    if session.error is not None or state != SessionState.COMPLETED:
        return 1
    return 0


def run_solve(args):
    """Run curve solving command."""
    from planartrack.solve import SolveAggregator
    from planartrack.tracking.track_io import load_markers, param_to_dict

    settings = _load_settings(args)
    if args.motion is not None:
        settings.motion_type = MotionType[args.motion.upper()]
    elif settings.motion_type == MotionType.NONE:
        settings.motion_type = MotionType.MATCH_MOVE
    if args.transform_type is not None:
        settings.transform_type = TransformType[args.transform_type.upper()]
    if args.reference_frame is not None:
        settings.reference_frame = args.reference_frame
    settings.validate()

    if args.video:
        from planartrack.core.video import VideoFrameSource
        with VideoFrameSource(args.video) as video:
            props = video.properties
        source = FormatOnlySource(props.width, props.height)
    else:
        source = FormatOnlySource(*args.size)

    markers = load_markers(args.markers)
    progress = NullProgress() if args.quiet else LoggingProgress("solve")

    with SolveAggregator(markers, source, settings, progress, LoggingErrorSink()) as aggregator:
        task = aggregator.solve_from_settings()
        task.result()

        if settings.transform_type == TransformType.TRANSFORM:
            params = aggregator.transform_params
            curves = {p.name: param_to_dict(p)
                      for p in (params.translate, params.rotate, params.scale, params.center)}
        else:
            params = aggregator.corner_pin_params
            curves = {p.name: param_to_dict(p)
                      for p in (*params.from_points, *params.to_points, *params.enabled)}

    output = {
        "motion_type": settings.motion_type.name,
        "transform_type": settings.transform_type.name,
        "reference_frame": settings.reference_frame,
        "invert": params.invert,
        "curves": curves,
    }
    with open(args.output, 'w') as f:
        json.dump(output, f, indent=2)
    logger.info("Wrote %s", args.output)
    return 0


if __name__ == '__main__':
    sys.exit(main())
