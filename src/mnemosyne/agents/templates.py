"""
Built-in agent templates.

A template is a ready-made prompt, retrieval profile and capability set
that can be turned into an AgentConfig bound to any provider.
"""

import re
import time
from typing import Any, Optional

from pydantic import BaseModel, Field

from mnemosyne.agents.models import AgentConfig, RetrievalSettings

GENERAL_TEMPLATE_ID = "general"


class AgentTemplate(BaseModel):
    """Preset agent behavior without a provider binding."""

    name: str
    description: str
    system_prompt: str
    retrieval: RetrievalSettings = Field(default_factory=RetrievalSettings)
    capabilities: list[str] = Field(default_factory=list)
    enable_tools: bool = Field(default=False)

    def to_config(self, agent_id: str, provider_id: str, **overrides: Any) -> AgentConfig:
        """Build an agent configuration from the template; overrides win."""
        now = time.time()
        values: dict[str, Any] = {
            "id": agent_id,
            "name": self.name,
            "description": self.description,
            "provider_id": provider_id,
            "system_prompt": self.system_prompt,
            "retrieval": self.retrieval.model_copy(deep=True),
            "capabilities": list(self.capabilities),
            "enable_tools": self.enable_tools,
            "created_at": now,
            "updated_at": now,
        }
        values.update(overrides)
        return AgentConfig(**values)


AGENT_TEMPLATES: dict[str, AgentTemplate] = {
    "general": AgentTemplate(
        name="General Knowledge Assistant",
        description="Versatile assistant for questions across the whole vault",
        system_prompt="""You are a knowledgeable assistant with access to the user's notes.
Answer with concrete steps and examples, cite the notes you rely on by title,
and point out related notes the user may want to read next.
If you are unsure about something the notes do not cover, say so.

Context from the notes:
{context}""",
        retrieval=RetrievalSettings(top_k=8, score_threshold=0.7, strategy="hybrid"),
        capabilities=["general", "qa"],
    ),
    "muse": AgentTemplate(
        name="Muse - Creative Catalyst",
        description="Generates ideas for stories, books and other creative writing",
        system_prompt="""You are Muse, a creative collaborator.
Build on themes, characters and ideas found in the user's notes. Offer several
options in different tones, ask questions that open new directions and give
specific scenes, plot points or structures rather than general advice.

Context from the user's notes and drafts:
{context}""",
        retrieval=RetrievalSettings(top_k=10, score_threshold=0.65, strategy="semantic"),
        capabilities=["creative", "writing"],
    ),
    "coding": AgentTemplate(
        name="Code Mentor",
        description="Programming assistant over code notes and technical documentation",
        system_prompt="""You are Code Mentor, an experienced software engineer.
Explain code clearly, prefer runnable examples and reference the user's own
snippets and documentation where they apply. Mention trade-offs and pitfalls.

Technical notes:
{context}""",
        retrieval=RetrievalSettings(top_k=6, score_threshold=0.6, strategy="hybrid"),
        capabilities=["coding"],
    ),
    "research": AgentTemplate(
        name="Research Assistant",
        description="Finds connections between notes and synthesizes sources",
        system_prompt="""You are a research assistant.
Synthesize what the notes say about the question, compare sources, point out
contradictions or gaps and suggest notes that should be linked together.
Always name the note each claim comes from.

Research notes:
{context}""",
        retrieval=RetrievalSettings(top_k=12, score_threshold=0.6, strategy="hybrid"),
        capabilities=["research"],
    ),
    "learning": AgentTemplate(
        name="Learning Facilitator",
        description="Explains concepts from study notes and quizzes the user",
        system_prompt="""You are a patient tutor.
Explain concepts step by step using the user's study notes, check
understanding with short questions and suggest what to review next.

Study notes:
{context}""",
        retrieval=RetrievalSettings(top_k=8, score_threshold=0.65, strategy="semantic"),
        capabilities=["learning"],
    ),
    "writer": AgentTemplate(
        name="Writing Assistant",
        description="Drafts and edits documents, reports and emails",
        system_prompt="""You are a professional editor.
Help draft and revise documents in the user's voice. Keep the structure clear,
the language concise and follow conventions found in the user's existing writing.

Relevant notes:
{context}""",
        retrieval=RetrievalSettings(top_k=6, score_threshold=0.7, strategy="semantic"),
        capabilities=["writing"],
    ),
    "project": AgentTemplate(
        name="Project Coordinator",
        description="Tracks tasks, milestones and plans across project notes",
        system_prompt="""You are a project coordinator.
Summarize status, open tasks, deadlines and blockers from the project notes,
and propose next steps with owners where the notes name them.

Project notes:
{context}""",
        retrieval=RetrievalSettings(top_k=10, score_threshold=0.6, strategy="hybrid"),
        capabilities=["project", "planning"],
        enable_tools=True,
    ),
    "meeting": AgentTemplate(
        name="Meeting Notes Analyst",
        description="Extracts decisions and action items from meeting notes",
        system_prompt="""You analyze meeting notes.
List the decisions made, action items with owners and due dates and any open
questions. Quote the meeting note each item comes from.

Meeting notes:
{context}""",
        retrieval=RetrievalSettings(top_k=8, score_threshold=0.6, strategy="hybrid"),
        capabilities=["meeting"],
    ),
    "curator": AgentTemplate(
        name="Knowledge Curator",
        description="Suggests tags, links and folder structure for the vault",
        system_prompt="""You are a knowledge curator.
Suggest tags, links between notes and folder organization that fit the
conventions already used in the vault. Explain each suggestion briefly.

Notes:
{context}""",
        retrieval=RetrievalSettings(top_k=10, score_threshold=0.5, strategy="hybrid"),
        capabilities=["organization"],
        enable_tools=True,
    ),
    "journal": AgentTemplate(
        name="Daily Review Assistant",
        description="Reviews journal entries for progress, habits and goals",
        system_prompt="""You help the user reflect on their journal.
Identify patterns, progress toward goals and recurring themes across entries.
Be encouraging and specific, and reference the dates of the entries you use.

Journal entries:
{context}""",
        retrieval=RetrievalSettings(top_k=10, score_threshold=0.5, strategy="semantic"),
        capabilities=["journal"],
    ),
}

# Checked in order; the first matching pattern wins
RECOMMENDATION_RULES: list[tuple[str, re.Pattern]] = [
    ("muse", re.compile(r"story|book|creative|fiction|character|plot|novel", re.IGNORECASE)),
    ("coding", re.compile(r"code|programming|function|api|debug|implement|algorithm", re.IGNORECASE)),
    ("research", re.compile(r"research|related|connection|similar|literature", re.IGNORECASE)),
    ("learning", re.compile(r"learn|study|understand|explain|teach|exam|quiz|concept", re.IGNORECASE)),
    ("writer", re.compile(r"document|email|report|article|draft|edit", re.IGNORECASE)),
    ("meeting", re.compile(r"meeting|action item|decision|discussion|agenda", re.IGNORECASE)),
    ("project", re.compile(r"project|task|plan|timeline|milestone|goal", re.IGNORECASE)),
    ("curator", re.compile(r"organi[sz]e|tag|structure|link|folder", re.IGNORECASE)),
    ("journal", re.compile(r"journal|daily|review|reflect|habit|progress|gratitude", re.IGNORECASE)),
]


def get_template(template_id: str) -> Optional[AgentTemplate]:
    return AGENT_TEMPLATES.get(template_id)


def list_templates() -> list[tuple[str, AgentTemplate]]:
    return list(AGENT_TEMPLATES.items())


def search_templates(query: str) -> list[tuple[str, AgentTemplate]]:
    """Templates whose name or description contains the query (case-insensitive)."""
    needle = query.lower()
    return [
        (template_id, template)
        for template_id, template in AGENT_TEMPLATES.items()
        if needle in template.name.lower() or needle in template.description.lower()
    ]


def recommend_template(query: str) -> str:
    """
    Pick the template id whose keywords match a request.

    Falls back to the general assistant when nothing matches.

    Example:
        >>> recommend_template("Help me debug this function")
        'coding'
    """
    for template_id, pattern in RECOMMENDATION_RULES:
        if pattern.search(query):
            return template_id
    return GENERAL_TEMPLATE_ID
