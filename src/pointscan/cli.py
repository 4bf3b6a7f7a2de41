"""
pointscan - CLI
PLY 파일 확인 및 녹화된 스캔 세션 재생
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from .config_loader import ScanConfig
from .mesh_io import PLYFormatError, load_all_ply_from_folder, parse_ply_header, read_ply
from .reconstruction import (
    FinalizeStatus,
    FusionSettings,
    PointCloudFusion,
    RecordedCapture,
    ScanSession,
)


def setup_logging(debug_mode: bool = False) -> logging.Logger:
    """Configure root logging to stdout"""
    log_level = logging.DEBUG if debug_mode else logging.INFO

    if debug_mode:
        log_format = '%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s'
    else:
        log_format = '%(asctime)s [%(levelname)s] %(message)s'

    logging.basicConfig(
        level=log_level,
        format=log_format,
        datefmt='%H:%M:%S',
        handlers=[
            logging.StreamHandler(sys.stdout)
        ]
    )

    # Keep third-party libraries quiet
    if not debug_mode:
        logging.getLogger('trimesh').setLevel(logging.WARNING)
        logging.getLogger('PIL').setLevel(logging.WARNING)

    logger = logging.getLogger('pointscan')
    logger.setLevel(log_level)
    return logger


def cmd_inspect(args) -> int:
    """Print the layout and counts of one PLY file"""
    path = Path(args.input)
    try:
        document = read_ply(path)
        with open(path, 'r', encoding='ascii', errors='replace') as f:
            header = parse_ply_header(f.read().splitlines(), path)
    except (FileNotFoundError, PLYFormatError) as e:
        print(f"[ERROR] {e}")
        return 1

    print(f"Inspecting PLY file: {path}")
    print("=" * 60)
    print(f"  Vertices:   {document.vertex_count:,}")
    print(f"  Triangles:  {document.triangle_count:,}")
    print(f"  Colors:     {'yes' if document.has_colors else 'no'}")
    print(f"  Index type: {document.index_dtype.name}")
    print(f"  Vertex properties ({header.vertex_property_count} columns):")
    for name, column in header.property_index.items():
        print(f"    {name:6s} -> column {column}")
    if document.vertex_count:
        lo = document.vertices.min(axis=0)
        hi = document.vertices.max(axis=0)
        print(f"  Bounds:     [{lo[0]:.4f}, {lo[1]:.4f}, {lo[2]:.4f}] - "
              f"[{hi[0]:.4f}, {hi[1]:.4f}, {hi[2]:.4f}]")
    return 0


def cmd_load_dir(args) -> int:
    """Summarise every PLY file below a folder"""
    documents = load_all_ply_from_folder(args.folder)
    if not documents:
        print(f"No readable PLY files in {args.folder}")
        return 1

    print(f"{len(documents)} PLY files loaded from {args.folder}")
    for name, document in documents.items():
        kind = "points" if document.is_point_cloud else "mesh"
        print(f"  {name}: {document.vertex_count:,} vertices, "
              f"{document.triangle_count:,} triangles ({kind})")
    return 0


def cmd_replay(args) -> int:
    """Run a recorded session through the fusion engine and save the result"""
    try:
        config = ScanConfig(args.config)
        capture = RecordedCapture.from_json(args.session)
    except FileNotFoundError as e:
        print(f"[ERROR] {e}")
        return 1

    if config.debug:
        setup_logging(True)
    settings = FusionSettings.from_config(config)

    engine = PointCloudFusion(settings, frame_source=capture, depth_source=capture)
    engine.subscribe(capture.point_cloud_stream, capture.plane_stream)

    output_dir = args.output or config.output_dir
    session = ScanSession(engine, output_dir=output_dir, filename_template=config.filename_template)

    session.toggle()
    capture.replay()
    status = session.toggle()
    engine.unsubscribe()

    if status is FinalizeStatus.NO_FRAME:
        print("[ERROR] Session has no reference frame; nothing scanned")
        return 1

    cloud = engine.cloud
    print(f"Fused {len(cloud):,} points "
          f"(tracked {cloud.num_tracked:,}, plane {cloud.num_plane:,}, depth {cloud.num_depth:,})")
    if session.last_saved_path is not None:
        print(f"Saved: {session.last_saved_path}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pointscan",
        description="Point cloud fusion and PLY tools",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Inspect a PLY file
  pointscan inspect scan.ply

  # Summarise a folder of scans
  pointscan load-dir outputs/scans

  # Replay a recorded capture session
  pointscan replay session.json -o outputs/scans
        """
    )
    parser.add_argument("--debug", action="store_true", help="Verbose logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    inspect_parser = subparsers.add_parser("inspect", help="Show PLY layout and counts")
    inspect_parser.add_argument("input", help="Input .ply file")
    inspect_parser.set_defaults(func=cmd_inspect)

    load_parser = subparsers.add_parser("load-dir", help="Load every PLY below a folder")
    load_parser.add_argument("folder", help="Folder to search recursively")
    load_parser.set_defaults(func=cmd_load_dir)

    replay_parser = subparsers.add_parser("replay", help="Replay a recorded scan session")
    replay_parser.add_argument("session", help="Session .json file")
    replay_parser.add_argument("--output", "-o", default=None, help="Output directory")
    replay_parser.add_argument("--config", "-c", default=None, help="Config .yaml file")
    replay_parser.set_defaults(func=cmd_replay)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.debug)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
