from pathlib import Path
from typing import List, Union

from omegaconf import OmegaConf
from omegaconf.dictconfig import DictConfig


def merge_configs(config_paths: List[Union[str, Path]]) -> DictConfig:
    """
    Merge multiple YAML configuration files with precedence. Later configs override earlier ones.

    Args:
        config_paths: List of paths to YAML config files. Later configs take precedence.

    Returns:
        DictConfig: Merged configuration object

    Raises:
        ValueError: If config_paths is empty
        FileNotFoundError: If any config file doesn't exist

    Example:
        >>> config = merge_configs(["config/crawl.yaml", "config/local.yaml"])
    """
    if not config_paths:
        raise ValueError("config_paths is empty!")

    for config_path in config_paths:
        if not Path(config_path).exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

    # Load first config as base
    merged = OmegaConf.load(config_paths[0])

    for config_path in config_paths[1:]:
        merged = OmegaConf.merge(merged, OmegaConf.load(config_path))

    return merged
