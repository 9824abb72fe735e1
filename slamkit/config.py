"""Process-wide configuration read from a YAML parameter file.

Files written in OpenCV's storage format are accepted: the leading
``%YAML:1.0`` directive is skipped and ``!!opencv-matrix`` nodes are read
as numpy arrays.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path

import numpy as np
import yaml

logger = logging.getLogger(__name__)


class _Loader(yaml.SafeLoader):
    """Safe YAML loader that also understands OpenCV matrix nodes."""


def _opencv_matrix(loader, node):
    mapping = loader.construct_mapping(node, deep=True)
    try:
        rows = int(mapping["rows"])
        cols = int(mapping["cols"])
        data = mapping["data"]
    except KeyError as exc:
        raise yaml.YAMLError(f"opencv-matrix node lacks {exc.args[0]!r}") from exc
    return np.array(data, dtype=float).reshape(rows, cols)


_Loader.add_constructor("tag:yaml.org,2002:opencv-matrix", _opencv_matrix)


def _parse(text):
    lines = text.splitlines()
    if lines and lines[0].startswith("%YAML"):
        lines = lines[1:]
    data = yaml.load("\n".join(lines), Loader=_Loader)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError("parameter file must hold a mapping of keys to values")
    return data


class Config:
    """Parameters shared by the whole process, loaded once from a file."""

    _parameters = None
    _lock = threading.Lock()

    @classmethod
    def set_parameter_file(cls, filename):
        """Load ``filename`` as the current parameter file.

        Raises FileNotFoundError if it does not exist and ValueError if it
        cannot be parsed; in both cases no parameters remain loaded.
        """
        path = Path(filename)
        with cls._lock:
            cls._parameters = None
            try:
                text = path.read_text(encoding="utf-8")
            except FileNotFoundError as exc:
                logger.error("parameter file %s does not exist.", filename)
                raise FileNotFoundError(f"parameter file {filename} does not exist.") from exc
            try:
                parameters = _parse(text)
            except yaml.YAMLError as exc:
                raise ValueError(f"cannot parse parameter file {filename}: {exc}") from exc
            cls._parameters = parameters

    @classmethod
    def get(cls, key):
        """The value stored under ``key`` in the current parameter file."""
        with cls._lock:
            parameters = cls._parameters
        if parameters is None:
            raise RuntimeError("no parameter file has been loaded")
        try:
            return parameters[key]
        except KeyError:
            raise KeyError(f"parameter {key!r} is not set") from None