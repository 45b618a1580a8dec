# logger.py
import logging
import logging.config

from widgetbridge.util.file_utils import from_json_or_yaml


def setup_logging(
    config_file_path=None,
    log_file_path=None,
    verbose=False,
):
    """
    Loads logging config from 'config_file_path' (YAML or JSON) and sets up logging.
    Optionally override the file handler's filename, and set the root logger to DEBUG if 'verbose'.
    Without a config file, falls back to a plain console configuration.
    """
    if config_file_path:
        config = from_json_or_yaml(config_file_path)

        if log_file_path and "file_handler" in config.get("handlers", {}):
            config["handlers"]["file_handler"]["filename"] = str(log_file_path)

        logging.config.dictConfig(config)
    else:
        logging.basicConfig(
            level=logging.INFO,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        )

    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    return logging.getLogger("widgetbridge")
