"""
Prompt construction for background image generation.

PromptBuilder turns a song (lyrics, title, artist) and a named style
template into the text prompt sent to an image provider. It is pure:
the same inputs always produce the same prompt, which makes the prompt
hash a stable cache key.

Excerpt Selection:
    Providers cap prompt length and the full lyrics add little, so only
    an excerpt is embedded:
        1. The first paragraph carrying a chorus/refrain marker
           ("Chorus", "[Refrain]", "副歌", "[C]", ...)
        2. Otherwise the first two paragraphs (blank-line separated)
        3. Otherwise the first N lines (single-paragraph lyrics)
    Bare section labels ("[Chorus]", "Verse 2:") are removed from the
    excerpt, which is then cut to the character budget.

Template Placeholders:
    {{lyrics}}     Lyrics excerpt (required in every template)
    {{songTitle}}  Song title, empty if unknown
    {{artist}}     Artist, empty if unknown

Usage:
    builder = PromptBuilder()
    prompt = builder.build(lyrics, template="worship", song_title="Amazing Grace")
    key = prompt_hash(prompt)
"""

import hashlib
import re
from types import MappingProxyType
from typing import Mapping

from lyricslides.core.config import PromptConfig
from lyricslides.core.exceptions import GenerationParamsError


DEFAULT_TEMPLATE_NAME = "default"

_NO_TEXT = "No text, no letters, no people."

DEFAULT_TEMPLATES: Mapping[str, str] = MappingProxyType({
    "default": (
        "Create a background image for the following lyrics:\n"
        "\"{{lyrics}}\"\n"
        "Style: simple and modern, suitable as a projected slide background for "
        "church services or sing-along gatherings. "
        f"{_NO_TEXT} Only a calm, harmonious abstract background."
    ),
    "abstract": (
        "Create an abstract art background that conveys the emotion of these lyrics:\n"
        "\"{{lyrics}}\"\n"
        f"Style: soft colours, flowing shapes. {_NO_TEXT} Suitable as a slide background."
    ),
    "nature": (
        "Create a natural landscape background inspired by these lyrics:\n"
        "\"{{lyrics}}\"\n"
        f"Style: peaceful natural scenery. {_NO_TEXT} Suitable as a slide background."
    ),
    "worship": (
        "Create a reverent background for these worship lyrics:\n"
        "\"{{lyrics}}\"\n"
        f"Style: sacred, peaceful, minimal. {_NO_TEXT} Suitable for church slides."
    ),
    "modern": (
        "Create a modern background for the following lyrics:\n"
        "\"{{lyrics}}\"\n"
        f"Style: contemporary design, minimal, smooth gradients. {_NO_TEXT} "
        "Suitable as a slide background."
    ),
    "minimalist": (
        "Minimalist design, abstract shapes, monochrome illustration: slide background "
        "inspired by the atmosphere of the song \"{{songTitle}}\", designed for church "
        "worship slides. Low contrast, may include simple church elements or elements "
        "of the lyrics: \"{{lyrics}}\". No text, no letters, no people, no faces, "
        "no symbols, no intricate details, no harsh gradients, low sharpness."
    ),
})

_CHORUS_MARKER = re.compile(r"chorus|refrain|副歌|\[\s*c\d*\s*\]", re.IGNORECASE)

# A line that is nothing but a section label, e.g. "[Chorus]", "Verse 2:", "(Bridge)", "[C]"
_SECTION_LABEL = re.compile(
    r"^\s*[\[(]?\s*(chorus|refrain|verse|bridge|pre-chorus|intro|outro|副歌|主歌|橋段|[cvb])"
    r"\s*\d*\s*[\])]?\s*:?\s*$",
    re.IGNORECASE,
)

_PARAGRAPH_SPLIT = re.compile(r"\n\s*\n")


def prompt_hash(prompt: str) -> str:
    """Return the cache hash of a prompt: first 10 hex chars of its MD5 digest."""
    return hashlib.md5(prompt.encode("utf-8")).hexdigest()[:10]


def _clean_paragraph(paragraph: str) -> str:
    lines = [line.strip() for line in paragraph.splitlines()]
    return "\n".join(line for line in lines if line and not _SECTION_LABEL.match(line))


def extract_excerpt(lyrics: str, max_chars: int = 300, max_lines: int = 8) -> str:
    """
    Select the part of the lyrics embedded in the prompt.

    Args:
        lyrics: Full lyrics text (may be empty).
        max_chars: Character budget for the excerpt.
        max_lines: Line count used for lyrics without paragraph breaks.

    Returns:
        The excerpt, at most max_chars long. Empty for empty lyrics.
    """
    text = (lyrics or "").replace("\r\n", "\n").strip()
    if not text:
        return ""

    paragraphs = [p for p in _PARAGRAPH_SPLIT.split(text) if p.strip()]

    excerpt = ""
    for paragraph in paragraphs:
        if _CHORUS_MARKER.search(paragraph):
            excerpt = _clean_paragraph(paragraph)
            if excerpt:
                break

    if not excerpt and len(paragraphs) >= 2:
        excerpt = "\n\n".join(filter(None, (_clean_paragraph(p) for p in paragraphs[:2])))

    if not excerpt:
        lines = _clean_paragraph(text).splitlines()
        excerpt = "\n".join(lines[:max_lines])

    if len(excerpt) > max_chars:
        excerpt = excerpt[:max_chars].rstrip()
    return excerpt


class PromptBuilder:
    """
    Deterministic (lyrics, song, template) -> prompt builder.

    Instances are immutable; with_template() returns a new builder.

    Attributes:
        excerpt_chars: Character budget for the lyrics excerpt.
        excerpt_lines: Line budget for lyrics without paragraphs.
    """

    def __init__(
        self,
        templates: Mapping[str, str] | None = None,
        excerpt_chars: int = 300,
        excerpt_lines: int = 8
    ) -> None:
        merged = dict(DEFAULT_TEMPLATES)
        if templates:
            merged.update(templates)
        for name, body in merged.items():
            if "{{lyrics}}" not in body:
                raise GenerationParamsError(
                    f"Template '{name}' has no {{{{lyrics}}}} placeholder",
                    details={"template": name}
                )
        self._templates = MappingProxyType(merged)
        self.excerpt_chars = excerpt_chars
        self.excerpt_lines = excerpt_lines

    @classmethod
    def from_config(cls, prompts: PromptConfig) -> "PromptBuilder":
        return cls(
            templates=prompts.templates,
            excerpt_chars=prompts.excerpt_chars,
            excerpt_lines=prompts.excerpt_lines,
        )

    def templates(self) -> dict[str, str]:
        """Return a copy of the available templates by name."""
        return dict(self._templates)

    def with_template(self, name: str, body: str) -> "PromptBuilder":
        """Return a new builder with one template added or replaced."""
        templates = dict(self._templates)
        templates[name] = body
        return PromptBuilder(templates, self.excerpt_chars, self.excerpt_lines)

    def get_template(self, name: str | None) -> str:
        """Return a template body; unknown or empty names fall back to the default."""
        if name and name in self._templates:
            return self._templates[name]
        return self._templates[DEFAULT_TEMPLATE_NAME]

    def build(
        self,
        lyrics: str | None = None,
        template: str | None = None,
        song_title: str | None = None,
        artist: str | None = None,
        style: str | None = None,
        width: int | None = None,
        height: int | None = None
    ) -> str:
        """
        Build the prompt for a song.

        Args:
            lyrics: Song lyrics. May be empty when song_title is given.
            template: Template name; unknown names use "default".
            song_title: Fills {{songTitle}}.
            artist: Fills {{artist}}.
            style: Extra style hint, appended as its own line.
            width: With height, appended as an aspect ratio hint.
            height: See width.

        Returns:
            The prompt text.

        Raises:
            GenerationParamsError: If both lyrics and song_title are empty.
        """
        if not (lyrics and lyrics.strip()) and not (song_title and song_title.strip()):
            raise GenerationParamsError("Lyrics or a song title is required to build a prompt")

        excerpt = extract_excerpt(lyrics or "", self.excerpt_chars, self.excerpt_lines)

        prompt = (
            self.get_template(template)
            .replace("{{lyrics}}", excerpt)
            .replace("{{songTitle}}", (song_title or "").strip())
            .replace("{{artist}}", (artist or "").strip())
        )

        if style and style.strip():
            prompt += f"\nAdditional style: {style.strip()}"

        if width and height:
            prompt += f"\nAspect ratio: {width}x{height}"

        return prompt
