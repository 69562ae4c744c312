"""Novelty filter -- decide whether a candidate follow-up is worth a call.

The filter is deliberately conservative: it only drops a candidate when it
can positively show the candidate is redundant, either because the exact
utterance (modulo word order and punctuation) was already used somewhere in
the tree, or because every theme it touches is already covered by a sibling
branch under the same parent.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from functools import lru_cache
from typing import TYPE_CHECKING

from call_discovery.constants import TERMINAL_PHRASES, THEME_KEYWORDS, URGENCY_KEYWORDS

if TYPE_CHECKING:
	from call_discovery.models import Node
	from call_discovery.tree import ConversationTree

_NON_ALNUM = re.compile(r"[^a-z0-9\s]")


def path_signature(text: str) -> str:
	"""Order- and punctuation-insensitive fingerprint of an utterance."""
	cleaned = _NON_ALNUM.sub("", text.lower())
	return " ".join(sorted(cleaned.split()))


def _word_start(keywords: tuple[str, ...]) -> re.Pattern[str]:
	"""One alternation matching any of keywords at the start of a word."""
	alternatives = sorted((re.escape(k.lower()) for k in keywords), key=len, reverse=True)
	return re.compile(r"\b(?:" + "|".join(alternatives) + ")")


@lru_cache(maxsize=16)
def _compile_table(items: tuple[tuple[str, str], ...]) -> tuple[tuple[re.Pattern[str], str], ...]:
	by_theme: dict[str, list[str]] = {}
	for keyword, theme in items:
		by_theme.setdefault(theme, []).append(keyword)
	return tuple((_word_start(tuple(kws)), theme) for theme, kws in by_theme.items())


def _patterns_for(table: dict[str, str]) -> tuple[tuple[re.Pattern[str], str], ...]:
	return _compile_table(tuple(table.items()))


_CLOSING = _word_start(TERMINAL_PHRASES)
_URGENCY = _word_start(URGENCY_KEYWORDS)


def extract_themes(text: str, table: dict[str, str] | None = None) -> set[str]:
	"""Map text to coarse theme tags using a keyword table."""
	normalized = text.lower()
	patterns = _patterns_for(THEME_KEYWORDS if table is None else table)
	return {theme for pattern, theme in patterns if pattern.search(normalized)}


def has_urgency(text: str) -> bool:
	return _URGENCY.search(text.lower()) is not None


def has_closing_phrase(text: str) -> bool:
	return _CLOSING.search(text.lower()) is not None

def is_terminal_reply(transcript: str, survivors: list[str]) -> bool:
	"""Heuristic: nothing left to explore and the agent said goodbye.

	A rich reply ending in a pleasantry still has survivors and is therefore
	never terminal; tune TERMINAL_PHRASES rather than relying on this as a
	strict contract.
	"""
	if survivors:
		return False
	return has_closing_phrase(transcript)


@dataclass
class NoveltyVerdict:
	keep: bool
	reason: str
	signature: str = ""
	themes: set[str] = field(default_factory=set)


class NoveltyFilter:
	"""Keep/drop decisions for candidate utterances against the current tree."""

	def __init__(self, theme_keywords: dict[str, str] | None = None) -> None:
		self.theme_keywords = dict(THEME_KEYWORDS if theme_keywords is None else theme_keywords)
		self._patterns = _patterns_for(self.theme_keywords)

	def themes(self, text: str) -> set[str]:
		normalized = text.lower()
		return {theme for pattern, theme in self._patterns if pattern.search(normalized)}

	def evaluate(self, candidate: str, parent: Node, tree: ConversationTree) -> NoveltyVerdict:
		signature = path_signature(candidate)
		if not signature:
			return NoveltyVerdict(keep=False, reason="blank", signature=signature)
		if tree.signature_in_use(signature):
			return NoveltyVerdict(keep=False, reason="duplicate_signature", signature=signature)

		themes = self.themes(candidate)
		if not themes:
			return NoveltyVerdict(keep=True, reason="unclassified", signature=signature)

		covered: set[str] = set()
		for child in tree.children_of(parent.id):
			covered |= child.themes
		if themes <= covered:
			return NoveltyVerdict(
				keep=False, reason="covered_by_siblings", signature=signature, themes=themes,
			)
		return NoveltyVerdict(keep=True, reason="novel", signature=signature, themes=themes)
