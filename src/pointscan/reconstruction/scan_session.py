"""
Scan Session Controller

Toggles a fusion engine between scanning and idle, and saves each finished
scan as a timestamped PLY file.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional, Union

from ..mesh_io import write_ply
from .point_cloud_fusion import FinalizeStatus, PointCloudFusion

logger = logging.getLogger(__name__)


def scan_filename(template: str = "scan_{timestamp}.ply", when: Optional[datetime] = None) -> str:
    """File name for a scan finished at `when` (default: now)"""
    when = when or datetime.now()
    return template.format(timestamp=when.strftime("%Y%m%d_%H%M%S"))


class ScanSession:
    """
    Start/stop control for one fusion engine

    Example:
        session = ScanSession(engine, output_dir="outputs/scans")
        session.toggle()   # start
        session.toggle()   # stop, finalize, save
        session.last_saved_path
    """

    def __init__(
        self,
        engine: PointCloudFusion,
        output_dir: Union[str, Path] = "outputs/scans",
        filename_template: str = "scan_{timestamp}.ply",
        on_saved: Optional[Callable[[Path], None]] = None
    ):
        self.engine = engine
        self.output_dir = Path(output_dir)
        self.filename_template = filename_template
        self.on_saved = on_saved

        self.last_saved_path: Optional[Path] = None
        self.last_status: Optional[FinalizeStatus] = None

    @property
    def is_scanning(self) -> bool:
        return self.engine.is_scanning

    def toggle(self) -> Optional[FinalizeStatus]:
        """Start when idle, stop when scanning; returns the stop status if stopped"""
        if not self.engine.is_scanning:
            self.start()
            return None
        return self.stop()

    def start(self):
        self.last_saved_path = None
        self.engine.start(self._handle_scan_complete)

    def stop(self) -> FinalizeStatus:
        self.last_status = self.engine.stop()
        return self.last_status

    def _handle_scan_complete(self):
        logger.info("Scan complete. Saving point cloud...")
        cloud = self.engine.cloud
        if len(cloud) == 0:
            logger.warning("Scan produced no points; nothing saved")
            return

        self.output_dir.mkdir(parents=True, exist_ok=True)
        path = self.output_dir / scan_filename(self.filename_template)
        saved = write_ply(path, cloud.positions, cloud.colors)
        if saved is None:
            return

        self.last_saved_path = saved
        if self.on_saved is not None:
            self.on_saved(saved)
