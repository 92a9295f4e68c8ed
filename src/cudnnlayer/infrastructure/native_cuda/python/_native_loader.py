"""
infrastructure/native_cuda/python/_native_loader.py

Cached loaders for the cuDNN and CUDA runtime shared libraries.

Both libraries are loaded once per process through `ctypes.CDLL` and the
handles are reused by every binding in the package.

Resolution order
----------------
1. An explicit path passed by the caller.
2. `CUDNN_LIBRARY` / `CUDART_LIBRARY` environment variables (full file path).
3. `CUDNN_PATH` / `CUDA_PATH` environment variables: the `lib64`, `lib` and
   `bin` subdirectories are searched for a matching library file.
4. `ctypes.util.find_library("cudnn")` / `find_library("cudart")`.
5. Well-known sonames (`libcudnn.so.9`, `libcudart.so.12`, ...), left to the
   dynamic loader's own search path.

Platform notes
--------------
- On Windows the `bin` directories of `CUDA_PATH`/`CUDNN_PATH` are registered
  with `os.add_dll_directory` so transitive dependencies resolve; the PATH
  fallback for WinError 206 is kept for long-path environments.
"""

from __future__ import annotations

import ctypes
import ctypes.util
import glob
import logging
import os
import sys
from functools import lru_cache
from typing import Iterable, List, Optional

from ....domain._errors import InitializationError

logger = logging.getLogger(__name__)

_CUDNN_SONAMES = ("libcudnn.so.9", "libcudnn.so.8", "libcudnn.so")
_CUDART_SONAMES = ("libcudart.so.12", "libcudart.so.11.0", "libcudart.so")
_CUDNN_PATTERNS = ("libcudnn.so*", "cudnn64_*.dll", "libcudnn*.dylib")
_CUDART_PATTERNS = ("libcudart.so*", "cudart64_*.dll", "libcudart*.dylib")


def _add_dll_dir_or_path(dir_path: str) -> None:
    """
    Add a directory for DLL dependency resolution (Windows only).

    Uses `os.add_dll_directory`; when that fails with WinError 206 ("The
    filename or extension is too long") the directory is prepended to the
    process PATH instead.
    """
    if sys.platform != "win32" or not dir_path or not os.path.isdir(dir_path):
        return
    try:
        os.add_dll_directory(dir_path)
    except OSError as e:
        if getattr(e, "winerror", None) != 206:
            raise
        cur = os.environ.get("PATH", "")
        parts = cur.split(os.pathsep) if cur else []
        if dir_path not in parts:
            os.environ["PATH"] = dir_path + os.pathsep + cur if cur else dir_path


def _candidates_from_root(root: str, patterns: Iterable[str]) -> List[str]:
    out: List[str] = []
    if not root:
        return out
    for sub in ("lib64", "lib", "bin", os.path.join("lib", "x64")):
        d = os.path.join(root, sub)
        if not os.path.isdir(d):
            continue
        _add_dll_dir_or_path(d)
        for pattern in patterns:
            out.extend(sorted(glob.glob(os.path.join(d, pattern)), reverse=True))
    return out


def _library_candidates(
    explicit: Optional[str],
    *,
    file_env: str,
    root_env: str,
    patterns: Iterable[str],
    short_name: str,
    sonames: Iterable[str],
) -> List[str]:
    candidates: List[str] = []
    if explicit:
        candidates.append(str(explicit))
    env_file = os.environ.get(file_env, "")
    if env_file:
        candidates.append(env_file)
    candidates.extend(_candidates_from_root(os.environ.get(root_env, ""), patterns))
    found = ctypes.util.find_library(short_name)
    if found:
        candidates.append(found)
    candidates.extend(sonames)
    return candidates


def _load_first(name: str, candidates: List[str]) -> ctypes.CDLL:
    errors = []
    for c in candidates:
        try:
            lib = ctypes.CDLL(c)
        except OSError as e:
            errors.append(f"{c}: {e}")
            continue
        logger.debug("loaded %s from %s", name, c)
        return lib
    tried = "; ".join(errors) if errors else "no candidates"
    raise InitializationError(f"unable to load {name} ({tried})", call=name)


@lru_cache(maxsize=None)
def load_cudnn(path: Optional[str] = None) -> ctypes.CDLL:
    """
    Load and cache the cuDNN shared library.

    Parameters
    ----------
    path : Optional[str]
        Explicit library path. When None, the environment and the system
        search path are consulted (see module docstring).

    Returns
    -------
    ctypes.CDLL
        Loaded cuDNN handle.

    Raises
    ------
    InitializationError
        If no candidate could be loaded.
    """
    # cuDNN on Windows needs the CUDA runtime directory registered first
    _candidates_from_root(os.environ.get("CUDA_PATH", ""), ())
    return _load_first(
        "cudnn",
        _library_candidates(
            path,
            file_env="CUDNN_LIBRARY",
            root_env="CUDNN_PATH",
            patterns=_CUDNN_PATTERNS,
            short_name="cudnn",
            sonames=_CUDNN_SONAMES,
        ),
    )


@lru_cache(maxsize=None)
def load_cudart(path: Optional[str] = None) -> ctypes.CDLL:
    """
    Load and cache the CUDA runtime shared library.

    Parameters
    ----------
    path : Optional[str]
        Explicit library path.

    Returns
    -------
    ctypes.CDLL
        Loaded CUDA runtime handle.

    Raises
    ------
    InitializationError
        If no candidate could be loaded.
    """
    return _load_first(
        "cudart",
        _library_candidates(
            path,
            file_env="CUDART_LIBRARY",
            root_env="CUDA_PATH",
            patterns=_CUDART_PATTERNS,
            short_name="cudart",
            sonames=_CUDART_SONAMES,
        ),
    )
