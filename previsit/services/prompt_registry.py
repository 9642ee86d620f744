"""Prompt registry: load versioned prompt templates from YAML files under previsit/prompts/."""
import logging
from pathlib import Path
from typing import Optional

import yaml

logger = logging.getLogger(__name__)

# Directory containing prompt name/version folders (previsit/prompts/)
_PROMPTS_DIR = Path(__file__).resolve().parent.parent / "prompts"

DEFAULT_VERSION = "v1"


def _load_prompt_file(name: str, version: str) -> Optional[dict]:
    """Load a single prompt YAML file. Returns None if not found."""
    path = _PROMPTS_DIR / name / f"{version}.yaml"
    if not path.is_file():
        return None
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
        return data if isinstance(data, dict) else None
    except Exception as e:
        logger.warning("Failed to load prompt %s/%s: %s", name, version, e)
        return None


def get_prompt(name: str, version: str = DEFAULT_VERSION) -> str:
    """
    Get prompt template body by name and version.
    Raises LookupError when the prompt file is missing or has no body, since
    every prompt the pipeline uses ships with the package.
    """
    data = _load_prompt_file(name, version)
    body = (data or {}).get("body")
    if not isinstance(body, str) or not body.strip():
        raise LookupError(f"Prompt {name}/{version} not found")
    return body.strip()
