"""Document language guess for plan sets."""
from __future__ import annotations

import logging
import re
from typing import Optional

from langdetect import DetectorFactory, LangDetectException, detect_langs

LOGGER = logging.getLogger(__name__)
DetectorFactory.seed = 0

# Sheet numbers, dimensions and grid tags carry digits and no language signal.
_NUMERIC_TOKEN = re.compile(r"\S*\d\S*")
_MIN_LETTERS = 40
_MIN_PROBABILITY = 0.6


class LanguageDetector:
    """Guess the language of title block and general notes text.

    Returns ``None`` when too little prose survives or the best guess is weak.
    """

    def __init__(self, min_letters: int = _MIN_LETTERS, min_probability: float = _MIN_PROBABILITY) -> None:
        self.min_letters = min_letters
        self.min_probability = min_probability

    def detect(self, text: str) -> Optional[str]:
        prose = " ".join(_NUMERIC_TOKEN.sub(" ", text).split())
        if sum(char.isalpha() for char in prose) < self.min_letters:
            return None
        try:
            candidates = detect_langs(prose.lower())
        except LangDetectException as exc:
            LOGGER.debug("Language detection failed on %s characters: %s", len(prose), exc)
            return None
        best = candidates[0] if candidates else None
        if best is None or best.prob < self.min_probability:
            return None
        return best.lang
