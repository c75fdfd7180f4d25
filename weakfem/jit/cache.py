# weakfem/jit/cache.py
import hashlib
import importlib.util
import logging
import os
import sys
import tempfile
import textwrap
import time
from contextlib import contextmanager
from pathlib import Path
from types import ModuleType
from typing import Any, Dict, List, Tuple

from weakfem.jit.ir import KernelIR

logger = logging.getLogger(__name__)


def default_cache_dir() -> Path:
    env = os.getenv("WEAKFEM_CACHE_DIR")
    return Path(env) if env else Path.home() / ".cache" / "weakfem_jit"


class KernelCache:
    """
    Compile-once, reuse-many cache for JIT-generated kernels.

    get_kernel(ir, codegen) -> (callable kernel, param_order list)

    Kernels are kept in memory for the session and written as importable
    modules under the cache directory, so numba's own on-disk cache can
    pick them up in later sessions.
    """

    def __init__(self, cache_dir: Path | str | None = None) -> None:
        self.cache_dir = Path(cache_dir) if cache_dir is not None else default_cache_dir()
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        self.in_memory_cache: Dict[str, Tuple[Any, List[str]]] = {}

    # ------------------------------------------------------------------
    # public API
    # ------------------------------------------------------------------
    def get_kernel(self, ir: KernelIR, codegen):
        """
        Build (or load) a kernel for ``ir`` and return (kernel_fn, param_order).
        The codegen object must expose ``signature`` and
        ``generate_source(ir, name) -> (source_str, param_order)``.
        """
        key = self._hash_ir(ir, codegen)
        if key in self.in_memory_cache:
            return self.in_memory_cache[key]

        module_name = f"_weakfem_kernel_{key[:32]}"
        source_file = self.cache_dir / f"{module_name}.py"

        if not source_file.exists():
            self._compile_and_write(source_file, ir, codegen)

        module = self._import_with_fallback(module_name, source_file, ir, codegen)
        param_order: List[str] = getattr(module, "PARAM_ORDER")
        kernel_fn = module.get_kernel()

        self.in_memory_cache[key] = (kernel_fn, param_order)
        return kernel_fn, param_order

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _hash_ir(ir: KernelIR, codegen) -> str:
        payload = f"{codegen.signature}|{ir.digest()}"
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()

    @contextmanager
    def _file_lock(self, file: Path):
        """Prevent two processes from writing the same module concurrently."""
        lock_path = file.with_suffix(".lock")
        while True:
            try:
                fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_RDWR)
                break
            except FileExistsError:
                time.sleep(0.05)
        try:
            yield
        finally:
            os.close(fd)
            try:
                lock_path.unlink()
            except FileNotFoundError:
                pass

    def _compile_and_write(self, target: Path, ir: KernelIR, codegen):
        """Generate source, syntax-check it and write it under a lock."""
        logger.info("JIT cache miss -> generating %s for form '%s'", target.name, ir.name)
        src, _ = codegen.generate_source(ir, "kernel")
        full_src = self._create_module_source(src, ir)

        try:
            compile(full_src, f"<{target.name}>", "exec")
        except SyntaxError as e:
            fail = Path(tempfile.gettempdir()) / f"{target.stem}_FAILED.py"
            fail.write_text(full_src, encoding="utf-8")
            raise SyntaxError(
                f"Generated kernel has syntax error (saved to {fail})\n"
                f"{e.msg} at line {e.lineno}: {(e.text or '').strip()}"
            ) from e

        with self._file_lock(target):
            tmp = target.with_suffix(".tmp")
            tmp.write_text(full_src, encoding="utf-8")
            os.replace(tmp, target)

    def _import_with_fallback(self, modname: str, path: Path, ir: KernelIR, codegen) -> ModuleType:
        """Import the module; if it is stale (no PARAM_ORDER), regenerate once."""
        module = self._import_module(modname, path)
        if not hasattr(module, "PARAM_ORDER"):
            logger.warning("Kernel module '%s' is stale - rebuilding", modname)
            try:
                path.unlink()
            except OSError:
                pass
            self._compile_and_write(path, ir, codegen)
            module = self._import_module(modname, path)
        return module

    @staticmethod
    def _import_module(modname: str, path: Path) -> ModuleType:
        spec = importlib.util.spec_from_file_location(modname, path)
        if not spec or not spec.loader:
            raise ImportError(f"Could not load spec for {path}")
        mod = importlib.util.module_from_spec(spec)
        sys.modules[modname] = mod
        spec.loader.exec_module(mod)
        return mod

    @staticmethod
    def _create_module_source(kernel_src: str, ir: KernelIR) -> str:
        header = textwrap.dedent(f"""\
            # This file is auto-generated by weakfem JIT - DO NOT EDIT
            # form: {ir.name}  dim: {ir.dim}  boundary: {ir.boundary}
            import math
            import numba
            import numpy as np
            from weakfem.jit.numba_helpers import interpolate_symbols, accumulate_qp

            """)
        return header + kernel_src + "\n\ndef get_kernel():\n    return kernel\n"
