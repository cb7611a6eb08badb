#
# io_utils.py
#   Path lists, YAML and logging helpers.
#
# Author : Donny
#

import os
import logging

import yaml

LOGGER = logging.getLogger("jdacascade.io")


def ensure_dir(path):
    """Create directory (and parents) if it does not exist."""
    if path:
        os.makedirs(path, exist_ok=True)
    return path


def load_yaml(path):
    """Load a YAML file and return a dictionary."""
    with open(path, "r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh) or {}
    LOGGER.debug("Loaded YAML config %s -> keys=%s", path, list(data.keys()))
    return data


def setup_logging(level=logging.INFO):
    """Configure application logging if not already configured."""
    if logging.getLogger().handlers:
        logging.getLogger().setLevel(level)
        return
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )


def _read_lines(path):
    with open(path, "r", encoding="utf-8") as fh:
        return [line.strip() for line in fh if line.strip()]


def read_path_list(path):
    """Read a list of file paths.

    Every line is either a real path or a `.txt` sub-list holding real paths,
    so groups can be added without rewriting the master list. Relative paths
    are resolved against the directory of the list that names them.

    Parameters
    ----------
    path : str
        The master list file.

    Returns
    -------
    paths : list of str
    """
    base = os.path.dirname(os.path.abspath(path))
    paths = []
    for line in _read_lines(path):
        entry = line if os.path.isabs(line) else os.path.join(base, line)
        if entry.endswith(".txt"):
            sub_base = os.path.dirname(entry)
            for sub in _read_lines(entry):
                paths.append(sub if os.path.isabs(sub) else os.path.join(sub_base, sub))
        else:
            paths.append(entry)
    return paths
