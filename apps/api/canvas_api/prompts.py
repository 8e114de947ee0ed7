from __future__ import annotations

import re
from dataclasses import dataclass

MAX_WORDS_PER_BLOCK = 120

_PARAGRAPH_BREAK_RE = re.compile(r"\n{2,}")
_WORD_SPLIT_RE = re.compile(r"\s+")


def condense_report_text(text: str, max_words: int = MAX_WORDS_PER_BLOCK) -> str:
    blocks = [block.strip() for block in _PARAGRAPH_BREAK_RE.split(text)]
    condensed = []
    for block in blocks:
        if not block:
            continue
        words = _WORD_SPLIT_RE.split(block)
        if len(words) <= max_words:
            condensed.append(block)
        else:
            condensed.append(" ".join(words[:max_words]) + " ...")
    return "\n\n".join(condensed)


def build_canvas_prompt(topic: str, report_text: str, compact: bool = False) -> str:
    bullets = "2" if compact else "3"
    words = "35" if compact else "60"
    return (
        "You are an expert venture analyst.\n"
        f'Summarize the following case study on "{topic}" into the Business Model Canvas fields.\n'
        f"Keep each field concise: up to {bullets} short bullet fragments separated by newline "
        f"characters, no more than {words} words total.\n"
        "If information is missing, infer reasonable context from the narrative; "
        'avoid placeholders like "N/A".\n'
        "Return only JSON, no commentary or markdown.\n\n"
        "Case study:\n"
        '"""\n'
        f"{report_text}\n"
        '"""'
    )


@dataclass(frozen=True)
class SectionTemplate:
    section: str
    title: str
    instructions: str

    def build_prompt(self, topic: str) -> str:
        return (
            f'You are writing the "{self.title}" section of a business case study on "{topic}".\n'
            f"{self.instructions}\n"
            "Write in clear prose with markdown headings where useful. "
            "Do not invent precise figures you cannot attribute."
        )


CASE_STUDY_SECTIONS: tuple[SectionTemplate, ...] = (
    SectionTemplate("titleAbstract", "Title & Abstract", "Propose a title and a 120-word abstract."),
    SectionTemplate("introduction", "Introduction", "Introduce the company, its market and timeline."),
    SectionTemplate("problemStatement", "Problem Statement", "Describe the customer problem being solved."),
    SectionTemplate("solutionInnovation", "Solution / Innovation", "Explain the product and what is new about it."),
    SectionTemplate("businessModel", "Business Model", "Explain how the company creates and captures value."),
    SectionTemplate("challengesRisks", "Challenges & Risks", "List the main operational and market risks."),
    SectionTemplate("growthAchievements", "Growth & Achievements", "Summarize traction and milestones."),
    SectionTemplate("impactFuture", "Impact & Future Plans", "Discuss impact and the road ahead."),
    SectionTemplate("conclusion", "Conclusion", "Close with the key lessons of the case."),
    SectionTemplate("references", "References", "List the kinds of public sources a reader should consult."),
    SectionTemplate(
        "presentation",
        "Presentation",
        "Outline a ten-slide presentation of the case, one line per slide.",
    ),
)

PRESENTATION_SECTION = "presentation"
