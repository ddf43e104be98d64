# Answer map: secondary tag -> answer text, loaded from a YAML file.
#
#   3: "Sure, give me a second."
#   7: "Let me check on that for you."

from __future__ import annotations

import logging
import os
from typing import Dict, Mapping, Optional

import yaml

logger = logging.getLogger(__name__)


class AnswerMap:
    def __init__(self, answers: Optional[Mapping[int, str]] = None):
        self._answers: Dict[int, str] = {int(k): str(v) for k, v in (answers or {}).items()}

    @classmethod
    def from_yaml(cls, path: Optional[str | os.PathLike]) -> "AnswerMap":
        if path is None:
            return cls()
        if not os.path.exists(path):
            raise FileNotFoundError(f"Answer map not found: {path}")
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Answer map {path} must be a mapping of tag -> answer")
        logger.info("Loaded %d answer(s) from %s", len(data), path)
        return cls(data)

    def answer_for(self, tag: int) -> str:
        """Mapped answer, or the tag itself as text when unmapped."""
        return self._answers.get(int(tag), str(tag))

    def __len__(self) -> int:
        return len(self._answers)
