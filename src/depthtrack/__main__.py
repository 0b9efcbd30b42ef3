from __future__ import annotations

import argparse
import logging
import os
import random
from pathlib import Path

import numpy as np
from dotenv import load_dotenv

from .config import TrackerConfig, load_tracker_config
from .dataset import DirectorySession
from .errors import ConfigurationError
from .openusd import results_to_usda
from .seeding import sample_table_clusters
from .session import TrackingSession, TrajectoryWriter

logger = logging.getLogger("depthtrack.cli")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Replay a stored depth session through the multi-body tracker.",
    )
    parser.add_argument("--session", type=Path, required=True, help="session directory with frames.json")
    parser.add_argument("--config", type=Path, default=None, help="tracker configuration JSON")
    parser.add_argument(
        "--output",
        type=Path,
        default=None,
        help="trajectory text file; defaults to tracking_data_<time>.txt in the session directory",
    )
    parser.add_argument("--usd", type=Path, default=None, help="also write the mean trajectory as .usda")
    parser.add_argument(
        "--no-ground-truth",
        action="store_true",
        help="seed from table clusters even when the first frame carries ground truth",
    )
    parser.add_argument(
        "--strict",
        action="store_true",
        help="stop at the first undecodable frame instead of skipping it",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=os.environ.get("DEPTHTRACK_LOG_LEVEL", "INFO"),
        help="logging level (DEBUG prints per-frame timings)",
    )
    return parser


def _initial_states(
    session: TrackingSession,
    source: DirectorySession,
    *,
    use_ground_truth: bool,
) -> tuple[list[np.ndarray], bool]:
    """Seeds and whether they are partial (one body) states."""
    config = session.config
    first = source.get(0)
    if use_ground_truth and first.ground_truth is not None:
        logger.info("initializing from the ground truth of frame %d", first.image.frame_index)
        return ([np.asarray(first.ground_truth, dtype=np.float64)] * config.initial_sample_count, False)

    seeds = sample_table_clusters(
        session.point_cloud(first),
        config.initial_sample_count,
        random.Random(config.seed),
    )
    if not seeds:
        raise ConfigurationError("no object clusters found in the first frame to seed from")
    return (seeds, True)


def main(argv: list[str] | None = None) -> None:
    load_dotenv()
    parser = _build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=str(args.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    config = load_tracker_config(args.config) if args.config is not None else TrackerConfig()
    source = DirectorySession(args.session)
    if len(source) == 0:
        parser.error(f"session {args.session} has no frames")

    session = TrackingSession(config)
    seeds, partial = _initial_states(session, source, use_ground_truth=not args.no_ground_truth)
    session.initialize(source.get(0), seeds, state_is_partial=partial)

    writer = TrajectoryWriter(args.output) if args.output is not None else TrajectoryWriter.in_directory(args.session)
    with writer:
        results = session.run(source, skip_undecodable=not args.strict, writer=writer)

    if args.usd is not None:
        args.usd.parent.mkdir(parents=True, exist_ok=True)
        args.usd.write_text(results_to_usda(results, session.layout, camera_frame=config.camera_frame), encoding="utf-8")
        print(f"wrote usd trajectory: {args.usd}")
    print(f"tracked {len(results)} frames, trajectory: {writer.path}")


if __name__ == "__main__":
    main()
