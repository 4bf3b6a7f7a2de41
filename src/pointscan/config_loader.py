"""
Config loader for pointscan
OmegaConf-based configuration management
"""
from pathlib import Path
from omegaconf import OmegaConf
from typing import Optional, Tuple

DEFAULT_CONFIG_PATH = Path(__file__).parent / "config" / "scan_config.yaml"


class ScanConfig:
    """Scan configuration loader"""

    def __init__(self, config_path: Optional[str] = None, overrides: Optional[dict] = None):
        """
        Load configuration from YAML file

        Args:
            config_path: Path to config file (default: packaged config/scan_config.yaml)
            overrides: Dotted-key overrides, e.g. {"scan.max_depth": 10.0}
        """
        if config_path is None:
            config_path = DEFAULT_CONFIG_PATH
        else:
            config_path = Path(config_path)

        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        self.cfg = OmegaConf.load(config_path)
        if config_path != DEFAULT_CONFIG_PATH:
            # User files only need the keys they change
            self.cfg = OmegaConf.merge(OmegaConf.load(DEFAULT_CONFIG_PATH), self.cfg)

        if overrides:
            for key, value in overrides.items():
                OmegaConf.update(self.cfg, key, value, merge=True)

        # Resolve environment variables
        OmegaConf.resolve(self.cfg)

        self.config_path = config_path

    def _get(self, key: str, default):
        value = OmegaConf.select(self.cfg, key)
        return default if value is None else value

    # ========== Scan Config ==========

    @property
    def use_feature_points(self) -> bool:
        return bool(self._get("scan.use_feature_points", True))

    @property
    def use_plane_mesh(self) -> bool:
        return bool(self._get("scan.use_plane_mesh", True))

    @property
    def use_depth_data(self) -> bool:
        return bool(self._get("scan.use_depth_data", True))

    @property
    def depth_sampling_step(self) -> int:
        """Depth-map pixels between depth samples"""
        return int(self._get("scan.depth_sampling_step", 4))

    @property
    def plane_mesh_resolution(self) -> float:
        """Plane sampling step and fine grid cell size"""
        return float(self._get("scan.plane_mesh_resolution", 0.05))

    @property
    def max_depth(self) -> float:
        return float(self._get("scan.max_depth", 20.0))

    @property
    def unknown_color(self) -> Tuple[int, int, int]:
        """Color of points not visible in the reference frame"""
        r, g, b = self._get("scan.unknown_color", [127, 127, 127])
        return (int(r), int(g), int(b))

    # ========== Output Config ==========

    @property
    def output_dir(self) -> str:
        """Get output directory (created if missing)"""
        path = Path(str(self._get("output.dir", "outputs/scans"))).expanduser()
        # Relative paths are taken from the working directory
        if not path.is_absolute():
            path = path.resolve()
        path.mkdir(parents=True, exist_ok=True)
        return str(path)

    @property
    def filename_template(self) -> str:
        return str(self._get("output.filename_template", "scan_{timestamp}.ply"))

    @property
    def debug(self) -> bool:
        return bool(self._get("logging.debug", False))
