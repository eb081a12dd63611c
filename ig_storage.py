#!/usr/bin/env python3
"""
JSON file storage for iterator checkpoints and login sessions.
"""

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

from ig_iterators import FrozenNodeIterator, resumable_iteration

PathLike = Union[str, Path]


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class JsonCheckpointStore:
    """
    Checkpoint persistence for resumable_iteration().

    Checkpoints are stored as ``<data_dir>/<prefix>_<magic>.json``.
    """

    def __init__(self, data_dir: PathLike = "crawler_data/resume", prefix: str = "iterator", check_bbd: bool = True):
        self.data_dir = Path(data_dir)
        self.prefix = prefix
        self.check_bbd = check_bbd

    @classmethod
    def from_config(cls, loader) -> "JsonCheckpointStore":
        data_dir = Path(loader.get("instagram.storage.data_dir", "crawler_data")) / "resume"
        return cls(
            data_dir,
            prefix=loader.get("instagram.settings.resume_prefix", "iterator"),
            check_bbd=loader.get("instagram.settings.check_resume_bbd", True),
        )

    def format_path(self, magic: str) -> str:
        return str(self.data_dir / f"{self.prefix}_{magic}.json")

    def load(self, context, path: str) -> Optional[FrozenNodeIterator]:
        resume_path = Path(path)
        if not resume_path.exists():
            return None
        try:
            state = json.loads(resume_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            context.error(f"Warning: Could not read resume information {path}: {exc}", repeat_at_end=False)
            return None
        if not isinstance(state, dict):
            return None
        return FrozenNodeIterator.from_dict(state)

    def save(self, frozen: FrozenNodeIterator, path: str) -> None:
        resume_path = Path(path)
        resume_path.parent.mkdir(parents=True, exist_ok=True)
        state = frozen.to_dict()
        state["updated_at"] = utc_now_iso()
        resume_path.write_text(json.dumps(state, ensure_ascii=False, indent=2), encoding="utf-8")

    def clear(self, path: str) -> None:
        resume_path = Path(path)
        if resume_path.exists():
            resume_path.unlink()

    def resumable(self, context, iterator, enabled: bool = True, keep: bool = False):
        """resumable_iteration() bound to this store. The checkpoint is removed on completion unless ``keep``."""
        return resumable_iteration(
            context, iterator, self.load, self.save, self.format_path,
            check_bbd=self.check_bbd, enabled=enabled, clear=None if keep else self.clear,
        )


def default_session_filename(username: str, data_dir: PathLike = "crawler_data") -> Path:
    return Path(data_dir) / "sessions" / f"session-{username}.json"


def save_session_to_file(context, path: Optional[PathLike] = None, data_dir: PathLike = "crawler_data") -> Path:
    if path is None:
        if not context.username:
            raise ValueError("Cannot pick a session filename without a logged in user")
        path = default_session_filename(context.username, data_dir)
    session_path = Path(path)
    session_path.parent.mkdir(parents=True, exist_ok=True)
    bundle = context.save_session()
    bundle["saved_at"] = utc_now_iso()
    session_path.write_text(json.dumps(bundle, ensure_ascii=False, indent=2), encoding="utf-8")
    return session_path


def load_session_from_file(context, username: Optional[str], path: Optional[PathLike] = None,
                           data_dir: PathLike = "crawler_data") -> None:
    if path is None:
        if not username:
            raise ValueError("Either username or path is required")
        path = default_session_filename(username, data_dir)
    bundle = json.loads(Path(path).read_text(encoding="utf-8"))
    bundle.pop("saved_at", None)
    context.load_session(username, bundle)
