import json
import os

import yaml


def from_json_or_yaml(filepath):
    """
    Load configuration from a JSON or YAML file based on the file extension.

    Args:
        filepath (str): The path to the configuration file.

    Returns:
        dict: The configuration dictionary.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file extension is not supported or parsing fails.
    """
    if not os.path.exists(filepath):
        raise FileNotFoundError(f"Configuration file not found: {filepath}")

    _, ext = os.path.splitext(str(filepath))
    ext = ext.lower()

    with open(filepath, "r", encoding="utf-8") as f:
        try:
            if ext == ".json":
                data = json.load(f)
            elif ext in (".yaml", ".yml"):
                data = yaml.safe_load(f)
            else:
                raise ValueError(f"Unsupported configuration file format: {ext}")
        except (json.JSONDecodeError, yaml.YAMLError) as exc:
            raise ValueError(f"Failed to parse configuration file {filepath}: {exc}") from exc

    return data or {}
