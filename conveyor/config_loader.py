"""YAML documents with ``${VAR}`` substitution."""
import logging
import os
import re
import yaml
from typing import Dict, Any
from pathlib import Path

logger = logging.getLogger(__name__)


class ConfigLoader:
    """Reads YAML mappings and expands environment references in every string."""

    # ${NAME} or ${NAME:-fallback}
    ENV_VAR_PATTERN = re.compile(r'\$\{([A-Z_][A-Z0-9_]*)(?::-([^}]*))?\}')

    @classmethod
    def _lookup(cls, match: "re.Match") -> str:
        name, fallback = match.groups()
        if name in os.environ:
            return os.environ[name]
        if fallback is None:
            logger.warning(f"${{{name}}} is not set; substituting an empty string")
            return ""
        return fallback

    @classmethod
    def resolve_env_vars(cls, value: Any) -> Any:
        """Expand references in strings, walking into dicts and lists; other values pass through."""
        if isinstance(value, str):
            return cls.ENV_VAR_PATTERN.sub(cls._lookup, value)
        if isinstance(value, dict):
            return {key: cls.resolve_env_vars(item) for key, item in value.items()}
        if isinstance(value, list):
            return [cls.resolve_env_vars(item) for item in value]
        return value

    @classmethod
    def load_yaml(cls, config_path: Path) -> Dict[str, Any]:
        """
        Parse a YAML file whose top level is a mapping and expand its references.

        An empty file yields ``{}``.

        Raises:
            FileNotFoundError: No file at config_path
            ValueError: The top level is a list or scalar
            yaml.YAMLError: The file is not valid YAML
        """
        config_path = Path(config_path)
        if not config_path.is_file():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        document = yaml.safe_load(config_path.read_text(encoding='utf-8'))
        if document is None:
            return {}
        if not isinstance(document, dict):
            raise ValueError(f"Expected a mapping at the top of {config_path}")

        return cls.resolve_env_vars(document)
