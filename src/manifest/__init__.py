"""Project manifest model and loaders."""

from .model import Manifest
from .pyproject import load_pyproject
from .requirements_txt import load_requirements_txt

__all__ = ["Manifest", "load_pyproject", "load_requirements_txt"]
