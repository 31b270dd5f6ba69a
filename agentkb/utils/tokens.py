"""Token counting and token span segmentation.

Uses the HuggingFace ``tokenizers`` library when a tokenizer model is
configured and can be loaded, falling back to whitespace-delimited word
pieces otherwise.  Both paths expose the same two operations:

* :meth:`TokenCounter.count` -- number of token units in a string.
* :meth:`TokenCounter.spans` -- contiguous ``(start, end)`` character spans,
  one per token unit, that together cover the whole string.  Whitespace is
  attached to the token it precedes, so slicing the text by the spans and
  joining the slices reproduces the input exactly.
"""

from __future__ import annotations

import re

import structlog
from tokenizers import Tokenizer

logger = structlog.get_logger(logger_name=__name__)

_WORD_START_RE = re.compile(r"\S+")


class TokenCounter:
    """Counts and segments text into token units.

    Parameters
    ----------
    model_id:
        HuggingFace tokenizer id (e.g. ``"bert-base-uncased"``).  ``None``
        or an empty string selects the word-piece fallback without trying
        to download anything.
    """

    def __init__(self, model_id: str | None = None) -> None:
        self._model_id = model_id or None
        self._tokenizer = self._load_tokenizer(self._model_id) if self._model_id else None

    @property
    def unit_name(self) -> str:
        """Return a label describing what one unit is, for chunk parameters."""
        if self._tokenizer is not None:
            return f"tokens:{self._model_id}"
        return "tokens:words"

    def count(self, text: str) -> int:
        """Return the number of token units in *text*."""
        if not text:
            return 0
        if self._tokenizer is not None:
            return len(self._tokenizer.encode(text, add_special_tokens=False).ids)
        return len(_WORD_START_RE.findall(text))

    def spans(self, text: str) -> list[tuple[int, int]]:
        """Return contiguous character spans, one per token unit.

        The first span always starts at ``0`` and the last one ends at
        ``len(text)``.  Text without any token yields an empty list.
        """
        if not text:
            return []
        if self._tokenizer is not None:
            encoding = self._tokenizer.encode(text, add_special_tokens=False)
            starts = sorted({start for start, end in encoding.offsets if end > start})
        else:
            starts = [m.start() for m in _WORD_START_RE.finditer(text)]

        if not starts:
            return []
        starts[0] = 0
        bounds = [*starts, len(text)]
        return [(bounds[i], bounds[i + 1]) for i in range(len(starts)) if bounds[i + 1] > bounds[i]]

    @staticmethod
    def _load_tokenizer(model_id: str) -> Tokenizer | None:
        """Fetch a pretrained tokenizer; ``None`` when it cannot be loaded (offline, unknown id)."""
        try:
            return Tokenizer.from_pretrained(model_id)
        except Exception as exc:  # noqa: BLE001
            logger.info(
                "tokenizer_unavailable",
                model_id=model_id,
                error=str(exc),
                msg="Falling back to whitespace word-piece token counting.",
            )
            return None
