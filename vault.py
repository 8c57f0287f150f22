from __future__ import annotations

import os
import tempfile
import threading
from pathlib import Path
from typing import Callable, Iterable, List, Tuple, TypeVar


T = TypeVar("T")


class Vault:
    def __init__(self, root: Path, suffixes: Iterable[str] = (".md",)) -> None:
        self.root = Path(root).expanduser().resolve()
        self.suffixes = tuple(s.lower() for s in suffixes)
        self._lock = threading.RLock()

    def _resolve(self, path: str) -> Path:
        candidate = (self.root / path).resolve()
        try:
            candidate.relative_to(self.root)
        except ValueError:
            raise ValueError(f"Path escapes the vault: {path}") from None
        return candidate

    def list_documents(self) -> List[str]:
        if not self.root.exists():
            return []
        out: List[str] = []
        for file_path in self.root.rglob("*"):
            if not file_path.is_file() or file_path.suffix.lower() not in self.suffixes:
                continue
            rel = file_path.relative_to(self.root)
            if any(part.startswith(".") for part in rel.parts):
                continue
            out.append(rel.as_posix())
        return sorted(out)

    def exists(self, path: str) -> bool:
        try:
            return self._resolve(path).is_file()
        except ValueError:
            return False

    def read(self, path: str) -> str:
        with self._resolve(path).open("r", encoding="utf-8", newline="") as handle:
            return handle.read()

    def write(self, path: str, content: str) -> None:
        target = self._resolve(path)
        with self._lock:
            fd, tmp_name = tempfile.mkstemp(prefix=".tmp-", dir=str(target.parent))
            try:
                with os.fdopen(fd, "w", encoding="utf-8", newline="") as handle:
                    handle.write(content)
                os.replace(tmp_name, target)
            except BaseException:
                try:
                    os.unlink(tmp_name)
                except OSError:
                    pass
                raise

    def process(self, path: str, fn: Callable[[str], Tuple[str, T]]) -> T:
        with self._lock:
            content = self.read(path)
            updated, result = fn(content)
            if updated != content:
                self.write(path, updated)
            return result
