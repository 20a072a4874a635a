"""
Document chunking with metadata preservation and quality scoring.

Splits markdown notes into bounded, overlapping chunks while preserving:
    - Heading breadcrumbs for context ("Parent > Child")
    - Document identity and chunk position
    - Tags, links, keywords and entities
    - Quality scores (information density, coherence)

Chunks are cut at exact character offsets, so removing each chunk's
leading overlap and concatenating the rest reproduces the document.
"""

import bisect
import logging
import math
import re
from collections import Counter
from dataclasses import dataclass, field
from typing import Any

import yaml
from langchain_text_splitters import RecursiveCharacterTextSplitter

HEADING_PATTERN = re.compile(r"^(#{1,6})\s+(.+)$", re.MULTILINE)
FENCE_PATTERN = re.compile(r"^```.*?^```[^\n]*$", re.MULTILINE | re.DOTALL)
FRONT_MATTER_PATTERN = re.compile(r"\A---[ \t]*\n(.*?)\n---[ \t]*(?:\n|\Z)", re.DOTALL)
WHITESPACE_PATTERN = re.compile(r"\s+")
HASHTAG_PATTERN = re.compile(r"(?<![\w#&/])#([A-Za-z][\w/-]*)")
WIKI_LINK_PATTERN = re.compile(r"\[\[([^\]|#]+)(?:[#|][^\]]*)?\]\]")
MD_LINK_PATTERN = re.compile(r"\[[^\]]*\]\(([^)\s]+)\)")
ENTITY_PATTERN = re.compile(r"\b[A-Z][a-zA-Z0-9]+(?:\s+[A-Z][a-zA-Z0-9]+)*\b")
WORD_PATTERN = re.compile(r"[A-Za-z][A-Za-z0-9'-]*")
NUMBERED_ITEM_PATTERN = re.compile(r"^\s*\d+[.)]\s", re.MULTILINE)
BULLET_ITEM_PATTERN = re.compile(r"^\s*[-*+]\s", re.MULTILINE)
TABLE_ROW_PATTERN = re.compile(r"^\s*\|.*\|\s*$", re.MULTILINE)

logger = logging.getLogger(__name__)

# Sections are cut at headings first; oversized sections fall back to the
# finer separators, down to single characters.
SECTION_SEPARATORS = [r"\n(?=#{1,6}\s)"]
BLOCK_SEPARATORS = [r"\n\n+", r"\n", r"(?<=[.!?])\s+", r"\s+", ""]

MAX_KEYWORDS = 15
MAX_ENTITIES = 10

STOP_WORDS = frozenset(
    """
    a about above after again against all also am an and any are as at be because been before
    being below between both but by can could did do does doing down during each few for from
    further had has have having he her here hers herself him himself his how i if in into is it
    its itself just let me more most my myself no nor not now of off on once only or other our
    ours ourselves out over own same she should so some such than that the their theirs them
    themselves then there these they this those through to too under until up upon very was we
    were what when where which while who whom why will with would you your yours yourself
    yourselves into within without also however therefore thus using used use like make made
    many much must need needs one two three first second next last well way ways still even
    """.split()
)


@dataclass
class ChunkingConfig:
    """Size and filtering parameters for one chunking run."""

    target_size: int = 800
    """Preferred chunk length in characters when a section has to be split."""

    min_size: int = 200
    """Minimum chunk length (the final remainder may be shorter)."""

    max_size: int = 1000
    """Hard upper bound on chunk length, overlap included."""

    overlap: int = 100
    """Characters of the previous chunk prepended to the next chunk."""

    respect_boundaries: bool = True
    """Prefer headings, paragraphs, lines, sentences and words as split points.

    When off, chunks are cut every target_size characters.
    """

    enable_quality_filter: bool = False
    """Drop chunks whose quality score is below quality_threshold."""

    quality_threshold: float = 0.3
    """Minimum quality score in [0, 1] kept by the filter."""

    def __post_init__(self) -> None:
        if self.min_size <= 0:
            raise ValueError(f"min_size must be positive, got {self.min_size}")
        if not self.min_size <= self.target_size <= self.max_size:
            raise ValueError(
                f"sizes must satisfy min_size <= target_size <= max_size, got "
                f"{self.min_size}/{self.target_size}/{self.max_size}"
            )
        if self.overlap < 0:
            raise ValueError(f"overlap must be non-negative, got {self.overlap}")
        if self.overlap >= self.min_size:
            raise ValueError(
                f"overlap ({self.overlap}) must be less than min_size ({self.min_size})"
            )
        if not 0.0 <= self.quality_threshold <= 1.0:
            raise ValueError(f"quality_threshold must be in [0, 1], got {self.quality_threshold}")

    @classmethod
    def from_settings(cls) -> "ChunkingConfig":
        """Build a config from application settings."""
        from mnemosyne.config import settings

        return cls(
            target_size=settings.chunk_target_size,
            min_size=settings.chunk_min_size,
            max_size=settings.chunk_max_size,
            overlap=settings.chunk_overlap,
            respect_boundaries=settings.chunk_respect_boundaries,
            enable_quality_filter=settings.chunk_quality_filter,
            quality_threshold=settings.chunk_quality_threshold,
        )


@dataclass
class Chunk:
    """A bounded span of document text with metadata."""

    content: str
    """The text content of the chunk, including any leading overlap."""

    chunk_id: str = ""
    """Stable identifier, "{document_id}#{chunk_index}"."""

    document_id: str = ""
    """Identifier of the owning document."""

    document_title: str = ""
    """Display title of the owning document."""

    chunk_index: int = 0
    """Ordinal position within the document."""

    metadata: dict[str, Any] = field(default_factory=dict)
    """Structural and semantic metadata (section, content_type, tags, scores, ...)."""

    @property
    def overlap(self) -> int:
        """Number of leading characters copied from the previous chunk."""
        return int(self.metadata.get("overlap", 0))

    @property
    def body(self) -> str:
        """Chunk text without the leading overlap."""
        return self.content[self.overlap:]

    def get_field(self, key: str) -> Any:
        """Look up a filterable attribute on the chunk or in its metadata."""
        if key in ("chunk_id", "document_id", "document_title", "chunk_index"):
            return getattr(self, key)
        return self.metadata.get(key)

    def to_dict(self) -> dict[str, Any]:
        return {
            "chunk_id": self.chunk_id,
            "document_id": self.document_id,
            "document_title": self.document_title,
            "chunk_index": self.chunk_index,
            "content": self.content,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Chunk":
        return cls(
            content=data["content"],
            chunk_id=data.get("chunk_id", ""),
            document_id=data.get("document_id", ""),
            document_title=data.get("document_title", ""),
            chunk_index=int(data.get("chunk_index", 0)),
            metadata=dict(data.get("metadata", {})),
        )


def chunk_document(
    text: str,
    *,
    document_id: str,
    title: str = "",
    config: ChunkingConfig | None = None,
    created_at: float | None = None,
    modified_at: float | None = None,
) -> list[Chunk]:
    """
    Split a document into chunks with metadata.

    Sections are cut at headings and packed up to the maximum size; a
    section that does not fit is split toward the target size at paragraph,
    line, sentence and word boundaries, then at single characters. Spans
    shorter than the minimum size are merged forward. The trailing
    characters of the previous span are prepended to the next chunk.

    Args:
        text: Document text to chunk
        document_id: Identifier of the owning document
        title: Document title (falls back to front matter or the first heading)
        config: Chunking parameters (default from settings)
        created_at: Document creation time (epoch seconds)
        modified_at: Document modification time (epoch seconds)

    Returns:
        Ordered list of chunks; empty for empty or whitespace-only text
    """
    config = config or ChunkingConfig.from_settings()

    if not text or not text.strip():
        return []

    front_matter, body_start = parse_front_matter(text)
    headings = _extract_headings(text)
    title = title or str(front_matter.get("title") or "") or (headings[0][2] if headings else document_id)
    doc_tags = _as_list(front_matter.get("tags"))

    spans = _split_spans(text, config, body_start)

    chunks: list[Chunk] = []
    for index, (start, end, overlap) in enumerate(spans):
        content = text[start - overlap:end]
        breadcrumb, section_title = _section_path(headings, _first_content_position(text, start, end))
        metadata = _build_metadata(content, breadcrumb, section_title, doc_tags)
        metadata.update(
            {
                "overlap": overlap,
                "start_offset": start - overlap,
                "end_offset": end,
                "created_at": created_at,
                "modified_at": modified_at,
            }
        )
        metadata.update(score_chunk(content, at_document_start=start == 0, at_document_end=end == len(text)))
        chunks.append(
            Chunk(
                content=content,
                chunk_id=f"{document_id}#{index}",
                document_id=document_id,
                document_title=title,
                chunk_index=index,
                metadata=metadata,
            )
        )

    if config.enable_quality_filter:
        chunks = filter_by_quality(chunks, config.quality_threshold)

    return chunks


def filter_by_quality(chunks: list[Chunk], threshold: float) -> list[Chunk]:
    """
    Drop chunks scoring below the threshold.

    A document never loses all of its chunks: when every chunk fails, the
    single highest-scoring one is kept.

    Args:
        chunks: Chunks of one document
        threshold: Minimum quality score

    Returns:
        Surviving chunks in their original order
    """
    if not chunks:
        return []

    kept = [c for c in chunks if c.metadata.get("quality_score", 0.0) >= threshold]
    if kept:
        return kept

    best = max(chunks, key=lambda c: c.metadata.get("quality_score", 0.0))
    return [best]


def score_chunk(
    content: str,
    at_document_start: bool = False,
    at_document_end: bool = False,
) -> dict[str, float]:
    """
    Score a chunk for information density and coherence.

    Information density mixes lexical diversity with the share of content
    words. Coherence rewards chunks that start and end on sentence or block
    boundaries.

    Returns:
        Dict with information_density, coherence_score and quality_score in [0, 1]
    """
    words = [w.lower() for w in WORD_PATTERN.findall(content)]
    if words:
        content_words = [w for w in words if w not in STOP_WORDS and len(w) > 2]
        diversity = len(set(words)) / len(words)
        content_ratio = len(content_words) / len(words)
        density = 0.6 * diversity + 0.4 * content_ratio
    else:
        density = 0.0

    stripped = content.strip()
    if stripped:
        first, last = stripped[0], stripped[-1]
        clean_start = at_document_start or first.isupper() or first.isdigit() or first in "#-*>|`[!"
        clean_end = at_document_end or last in ".!?:`)|]\"'" or content.endswith("\n")
        coherence = (float(clean_start) + float(clean_end)) / 2
    else:
        coherence = 0.0

    density = round(min(1.0, max(0.0, density)), 4)
    coherence = round(coherence, 4)
    return {
        "information_density": density,
        "coherence_score": coherence,
        "quality_score": round((density + coherence) / 2, 4),
    }


def parse_front_matter(text: str) -> tuple[dict[str, Any], int]:
    """
    Parse a leading YAML front matter block.

    A block that is not valid YAML, or not a mapping, yields no fields; the
    body still starts after the closing delimiter.

    Args:
        text: Document text

    Returns:
        Tuple of (parsed fields, offset where the body starts)
    """
    match = FRONT_MATTER_PATTERN.match(text)
    if not match:
        return {}, 0

    try:
        parsed = yaml.safe_load(match.group(1))
    except yaml.YAMLError as e:
        logger.debug(f"Ignoring malformed front matter: {e}")
        return {}, match.end()

    if not isinstance(parsed, dict):
        return {}, match.end()
    return {str(key): value for key, value in parsed.items()}, match.end()


def classify_content(content: str) -> str:
    """Classify a chunk as concept, procedure, reference or example."""
    if "```" in content or re.search(r"^#{1,6}\s+.*\bexamples?\b", content, re.IGNORECASE | re.MULTILINE):
        return "example"
    if len(NUMBERED_ITEM_PATTERN.findall(content)) >= 2 or re.search(
        r"^#{1,6}\s+.*\b(how to|steps?|install|setup|procedure)\b", content, re.IGNORECASE | re.MULTILINE
    ):
        return "procedure"
    links = len(WIKI_LINK_PATTERN.findall(content)) + len(MD_LINK_PATTERN.findall(content))
    if len(TABLE_ROW_PATTERN.findall(content)) >= 2 or links >= 3 or len(BULLET_ITEM_PATTERN.findall(content)) >= 4:
        return "reference"
    return "concept"


def extract_keywords(content: str, limit: int = MAX_KEYWORDS) -> list[str]:
    """Return the most frequent non-stop-words longer than three characters."""
    counts = Counter(
        word
        for word in (w.lower().strip("'-") for w in WORD_PATTERN.findall(content))
        if len(word) > 3 and word not in STOP_WORDS and not word.isdigit()
    )
    return [word for word, _ in counts.most_common(limit)]


def estimate_tokens(text: str) -> int:
    """Rough token estimate (four characters per token)."""
    return math.ceil(len(text) / 4)


# =============================================================================
# Internal helpers
# =============================================================================

def _split_spans(text: str, config: ChunkingConfig, body_start: int) -> list[tuple[int, int, int]]:
    """Compute (start, end, overlap) spans covering the whole text."""
    n = len(text)
    cuts = _candidate_cuts(text, config, body_start)
    fences = _fence_spans(text) if config.respect_boundaries else []

    spans: list[tuple[int, int, int]] = []
    start = 0
    prev_start = 0
    while start < n:
        overlap = _overlap_length(text, prev_start, start, config.overlap) if spans else 0
        min_body = max(1, config.min_size - overlap)
        max_body = config.max_size - overlap

        # Merge forward past cuts that leave the span short or split a code fence
        i = bisect.bisect_right(cuts, start)
        end = cuts[i]
        while end < n and (end - start < min_body or _inside_fence(end, fences)):
            if cuts[i + 1] - start > max_body:
                break
            i += 1
            end = cuts[i]

        if end < n and end - start < min_body:
            end = start + min_body
        end = min(end, start + max_body)

        spans.append((start, end, overlap))
        prev_start = start
        start = end

    return spans


def _candidate_cuts(text: str, config: ChunkingConfig, body_start: int) -> list[int]:
    """Sorted split positions proposed by the text splitters, ending with len(text)."""
    budget = config.max_size - config.overlap
    if config.respect_boundaries:
        sections = _splitter(SECTION_SEPARATORS, budget)
        blocks = _splitter(BLOCK_SEPARATORS, config.target_size - config.overlap)
    else:
        sections = None
        blocks = _splitter([""], config.target_size - config.overlap)

    cuts = {len(text)}
    for part_start, part_end in ((0, body_start), (body_start, len(text))):
        part = text[part_start:part_end]
        if not part:
            continue
        pieces = [(part_start, part)]
        if sections is not None:
            pieces = _pieces(sections, part, part_start)
        for piece_start, piece in pieces:
            cuts.add(piece_start)
            if len(piece) > budget or sections is None:
                cuts.update(start for start, _ in _pieces(blocks, piece, piece_start))

    cuts.discard(0)
    return sorted(cuts)


def _splitter(separators: list[str], chunk_size: int) -> RecursiveCharacterTextSplitter:
    return RecursiveCharacterTextSplitter(
        chunk_size=chunk_size,
        chunk_overlap=0,
        separators=separators,
        is_separator_regex=True,
        keep_separator="end",
        strip_whitespace=False,
        add_start_index=True,
        length_function=len,
    )


def _pieces(splitter: RecursiveCharacterTextSplitter, text: str, offset: int) -> list[tuple[int, str]]:
    """Split text and return (absolute start, piece) pairs."""
    return [
        (offset + doc.metadata["start_index"], doc.page_content)
        for doc in splitter.create_documents([text])
    ]


def _fence_spans(text: str) -> list[tuple[int, int]]:
    return [(m.start(), m.end()) for m in FENCE_PATTERN.finditer(text)]


def _inside_fence(pos: int, fences: list[tuple[int, int]]) -> bool:
    return any(start < pos < end for start, end in fences)


def _overlap_length(text: str, prev_start: int, start: int, overlap: int) -> int:
    """Length of the previous span's tail to prepend, snapped to a word start."""
    if overlap <= 0:
        return 0
    tail_start = max(prev_start, start - overlap)
    tail = text[tail_start:start]
    if tail_start > 0 and not text[tail_start - 1].isspace():
        match = WHITESPACE_PATTERN.search(tail)
        if match and match.end() < len(tail):
            tail = tail[match.end():]
    return len(tail)


def _extract_headings(text: str) -> list[tuple[int, int, str]]:
    """Return (position, level, title) for every heading outside code fences."""
    fences = _fence_spans(text)
    return [
        (m.start(), len(m.group(1)), m.group(2).strip())
        for m in HEADING_PATTERN.finditer(text)
        if not _inside_fence(m.start(), fences)
    ]


def _first_content_position(text: str, start: int, end: int) -> int:
    """Position of the first non-whitespace character in a span."""
    pos = start
    while pos < end and text[pos].isspace():
        pos += 1
    return pos


def _section_path(headings: list[tuple[int, int, str]], position: int) -> tuple[str, str]:
    """Heading breadcrumb and innermost title active at a position."""
    stack: list[tuple[int, str]] = []
    for pos, level, title in headings:
        if pos > position:
            break
        while stack and stack[-1][0] >= level:
            stack.pop()
        stack.append((level, title))
    titles = [title for _, title in stack]
    return " > ".join(titles), (titles[-1] if titles else "")


def _build_metadata(content: str, breadcrumb: str, section_title: str, doc_tags: list[str]) -> dict[str, Any]:
    tags = list(dict.fromkeys(doc_tags + HASHTAG_PATTERN.findall(content)))
    links = list(
        dict.fromkeys(
            [m.strip() for m in WIKI_LINK_PATTERN.findall(content)] + MD_LINK_PATTERN.findall(content)
        )
    )
    entities = [
        e for e in dict.fromkeys(ENTITY_PATTERN.findall(content))
        if e.lower() not in STOP_WORDS and len(e) > 1
    ][:MAX_ENTITIES]
    return {
        "section": breadcrumb,
        "section_title": section_title,
        "content_type": classify_content(content),
        "content_length": len(content),
        "token_count": estimate_tokens(content),
        "tags": tags,
        "links": links,
        "keywords": extract_keywords(content),
        "entities": entities,
        "topics": [t.lower() for t in breadcrumb.split(" > ") if t],
        "has_code": "```" in content,
    }


def _as_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, list):
        return [str(v).lstrip("#") for v in value if str(v)]
    return [t.lstrip("#") for t in re.split(r"[,\s]+", str(value)) if t]
