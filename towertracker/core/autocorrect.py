from pathlib import Path
from typing import Dict, Iterable, Optional

import textdistance

from .aliases import KNOWN_ENEMIES, add_killer_alias
from .notation import title_case


class Autocorrecter:
    def __init__(self, words: Iterable[str]) -> None:
        self.vocab: Dict[str, str] = {}
        for word in words:
            self.add_word(word)

    def add_word(self, word: str, display: Optional[str] = None) -> None:
        if not word:
            return
        key = word.lower()
        if key in self.vocab:
            return
        self.vocab[key] = display or word

    def best_match(self, input_word: str, threshold: float = 0.8) -> Optional[str]:
        if not input_word or not self.vocab:
            return None
        key = input_word.lower()
        if key in self.vocab:
            return self.vocab[key]
        score, best = max(
            (textdistance.cosine.normalized_similarity(v, key), v) for v in self.vocab
        )
        if score < threshold:
            return None
        return self.vocab[best]


class KillerNameCorrector:
    """Maps OCR'd "Killed By" text onto a known enemy name."""

    def __init__(
        self,
        aliases: Optional[Dict[str, str]] = None,
        known: Iterable[str] = KNOWN_ENEMIES,
        threshold: float = 0.8,
    ) -> None:
        self.aliases = {key.lower(): value for key, value in (aliases or {}).items()}
        self.threshold = threshold
        self.autocorrecter = Autocorrecter(known)
        for canonical in self.aliases.values():
            self.autocorrecter.add_word(canonical)

    def correct(self, raw: Optional[str]) -> str:
        text = (raw or "").strip()
        if not text:
            return "Apathy"
        alias = self.aliases.get(text.lower())
        if alias:
            return alias
        match = self.autocorrecter.best_match(text, self.threshold)
        return match or title_case(text)

    def add_alias(self, alias: str, canonical: str, base_dir: Optional[Path] = None) -> str:
        """Map ``alias`` onto ``canonical`` from now on, saving it under ``base_dir``."""
        alias = alias.strip()
        canonical = self.correct(canonical)
        if not alias:
            raise ValueError("Alias can't be empty")
        self.aliases[alias.lower()] = canonical
        self.autocorrecter.add_word(canonical)
        if base_dir is not None:
            add_killer_alias(base_dir, alias, canonical)
        return canonical
