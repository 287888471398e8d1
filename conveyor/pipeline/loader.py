"""Pipeline definitions on disk.

A preset is a YAML file in the presets directory; its file stem is the
pipeline name unless the document sets one. Custom pipelines are registered
at runtime and take precedence over presets with the same name.
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from conveyor.config_loader import ConfigLoader
from conveyor.pipeline.schema import PipelineConfig, StageType

logger = logging.getLogger(__name__)

DEFAULT_PRESETS_DIR = Path(__file__).parent.parent.parent / "config" / "pipelines"


class PipelineLoader:
    """Parses pipeline YAML into PipelineConfig and caches presets by name."""

    def __init__(self, presets_dir: Optional[Union[str, Path]] = None):
        self.presets_dir = Path(presets_dir) if presets_dir else DEFAULT_PRESETS_DIR
        self._preset_cache: Dict[str, PipelineConfig] = {}

    def load_from_yaml(self, yaml_path: Union[str, Path]) -> PipelineConfig:
        """
        Read one pipeline file.

        Raises:
            FileNotFoundError: Nothing at yaml_path
            pydantic.ValidationError: The document does not describe a valid pipeline
            yaml.YAMLError: The file is not valid YAML
        """
        yaml_path = Path(yaml_path)
        document = ConfigLoader.load_yaml(yaml_path)
        document.setdefault("name", yaml_path.stem)
        return PipelineConfig.model_validate(document)

    def load_from_dict(self, config_dict: Dict[str, Any]) -> PipelineConfig:
        """Build a pipeline from an already-parsed mapping, such as a request body."""
        return PipelineConfig.model_validate(ConfigLoader.resolve_env_vars(config_dict))

    def load_preset(self, preset_name: str) -> PipelineConfig:
        """
        Return the preset stored as ``<presets_dir>/<preset_name>.yaml``.

        Names containing path separators are refused with FileNotFoundError.
        """
        cached = self._preset_cache.get(preset_name)
        if cached is not None:
            return cached

        if Path(preset_name).name != preset_name:
            raise FileNotFoundError(f"Invalid preset name: {preset_name}")

        pipeline = self.load_from_yaml(self.presets_dir / f"{preset_name}.yaml")
        logger.debug(f"Loaded preset {preset_name} ({len(pipeline.stages)} stages)")
        self._preset_cache[preset_name] = pipeline
        return pipeline

    def list_presets(self) -> List[str]:
        if not self.presets_dir.is_dir():
            return []
        return sorted(path.stem for path in self.presets_dir.glob("*.yaml"))

    def validate_pipeline(self, pipeline: PipelineConfig) -> List[str]:
        """Non-fatal problems with a pipeline, as human-readable warnings."""
        warnings = []

        for stage in pipeline.stages:
            is_command = stage.type == StageType.COMMAND
            if is_command and not stage.is_runnable_command:
                warnings.append(f"Command stage '{stage.id}' has no command (will pass through)")
            if not is_command and stage.command:
                warnings.append(
                    f"Stage '{stage.id}' has a command but type '{stage.type.value}' (command is ignored)"
                )
            if stage.requires_approval and stage.command:
                warnings.append(f"Stage '{stage.id}' requires approval, its command will not run")
            if stage.retry_count and not is_command:
                warnings.append(f"Stage '{stage.id}' sets retry_count but is not a command stage")

        orders = [stage.order for stage in pipeline.stages]
        if len(set(orders)) < len(orders):
            warnings.append("Several stages share an order value (input order breaks ties)")

        return warnings


class PipelineRegistry:
    """Named pipelines: runtime registrations first, then presets."""

    def __init__(self, loader: Optional[PipelineLoader] = None):
        self.loader = loader or PipelineLoader()
        self._custom_pipelines: Dict[str, PipelineConfig] = {}

    def get_pipeline(self, name: str) -> Optional[PipelineConfig]:
        custom = self._custom_pipelines.get(name)
        if custom is not None:
            return custom
        try:
            return self.loader.load_preset(name)
        except FileNotFoundError:
            return None

    def register_custom(self, pipeline: PipelineConfig) -> None:
        self._custom_pipelines[pipeline.name] = pipeline

    def list_all(self) -> Dict[str, List[str]]:
        """Sorted names under ``presets`` and ``custom``."""
        return {
            "presets": self.loader.list_presets(),
            "custom": sorted(self._custom_pipelines),
        }
