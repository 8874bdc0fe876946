"""
Consultation text generation.

OpenAI writes the reading when a key is configured. Without a key, or when the
call fails or comes back empty, a static template built from the same inputs is
used instead, so a paid consultation always ends up with text.
"""
from dataclasses import dataclass
from typing import Optional

import structlog
from openai import OpenAI, OpenAIError

from app.domain import ConsultationType

logger = structlog.get_logger(__name__)

SYSTEM_PROMPT = (
    "You are a professional feng shui consultant with 20+ years of experience. "
    "Provide authentic, helpful, and detailed feng shui guidance based on traditional principles."
)

MAX_TOKENS = {
    ConsultationType.BASIC: 600,
    ConsultationType.DETAILED: 1000,
    ConsultationType.COMPREHENSIVE: 1500,
}

_PROMPT_HEADER = """{persona} Provide a {depth} feng shui consultation based on:
Birth Date: {birth_date}
Birth Time: {birth_time}
Birth Place: {birth_place}
Specific Questions: {questions}

"""

PROMPTS = {
    ConsultationType.BASIC: (
        "You are a professional feng shui consultant.",
        "basic",
        """Please provide a feng shui reading that includes:
1. Personal feng shui element analysis
2. Lucky colors and directions
3. Recommendations for home/office arrangement
4. Crystal recommendations
5. Specific answers to their questions

Keep the response professional, insightful, and helpful. Limit to 300-400 words.""",
    ),
    ConsultationType.DETAILED: (
        "You are an expert feng shui master.",
        "detailed",
        """Please provide an in-depth feng shui analysis including:
1. Complete BaZi (Four Pillars) analysis
2. Personal element strength and weaknesses
3. Detailed lucky/unlucky directions and colors
4. Annual feng shui forecast
5. Home/office recommendations with specific room guidance
6. Crystal and gemstone recommendations with placement
7. Career and relationship feng shui advice
8. Specific remedies for challenges mentioned
9. Detailed answers to all questions

Make it comprehensive and actionable. 600-800 words.""",
    ),
    ConsultationType.COMPREHENSIVE: (
        "You are a renowned feng shui grandmaster.",
        "comprehensive",
        """Please provide a complete feng shui life analysis including:
1. Full BaZi (Four Pillars) chart analysis with element interactions
2. Complete personal feng shui profile with strengths/weaknesses
3. Lucky/unlucky directions, colors, numbers, and timing
4. Annual and monthly feng shui forecast
5. Room-by-room home feng shui audit
6. Office/workplace optimization
7. Crystal and gemstone recommendations with exact placement
8. Career, relationship, health and wealth strategies
9. Specific remedies and detailed answers to all questions with action steps
10. A monthly feng shui calendar for optimal timing

Make this a complete life guide. 1000-1200 words with specific, actionable advice.""",
    ),
}

FALLBACK_TEMPLATES = {
    ConsultationType.BASIC: """## Your Personal Feng Shui Consultation

**Birth Information Analysis:**
Based on your birth date ({birth_date}) and location ({birth_place}), your primary feng shui element appears balanced with strong earth energy.

**Lucky Elements & Colors:**
- Primary Colors: Deep purple, gold, earth tones
- Lucky Directions: Southwest, Northeast
- Best Crystal: Amethyst for wisdom and clarity

**Home Feng Shui Recommendations:**
1. Place a small amethyst cluster in your bedroom's southwest corner
2. Use warm lighting in living areas
3. Keep your workspace organized and clutter-free

**Specific Guidance:**
Regarding your questions about "{questions_excerpt}", feng shui principles suggest focusing on harmony in your personal space.

This reading is based on traditional feng shui principles. Implement changes gradually and observe how they affect your daily energy.""",
    ConsultationType.DETAILED: """## Comprehensive Feng Shui Life Analysis

**Personal Element Profile:**
Born on {birth_date} in {birth_place}, your chart shows strong metal energy balanced with water, suggesting intelligence and adaptability as your core strengths.

**Lucky Directions & Colors:**
- Lucky Directions: West, Northwest, North
- Power Colors: White, silver, deep blue, black
- Best Times: Morning hours (7-11 AM) for important decisions

**Home Feng Shui Plan:**
- Living room: main seating facing West, amethyst geode in the wealth corner
- Bedroom: headboard against a solid wall, rose quartz on the nightstand
- Office: desk facing Northwest, clear quartz cluster for clarity

**Your Questions:**
"{questions}" - these concerns can be addressed through environmental adjustments and crystal placement that balance your personal energy with your surroundings.

**Action Plan:**
1. Week 1: Declutter and organize main living areas
2. Week 2: Add recommended crystals to key positions
3. Week 3: Adjust furniture positioning
4. Week 4: Observe and fine-tune energy flow""",
    ConsultationType.COMPREHENSIVE: """## Complete Feng Shui Life Transformation Guide

**Executive Summary:**
Born {birth_date} in {birth_place}, your profile reveals a powerful energy pattern that, properly harnessed, supports improvement across every area of life.

**Element Strength Analysis:**
- Metal (40%): communication, precision, leadership
- Water (25%): adaptability, intuition, flow
- Earth (20%): stability, patience, nurturing
- Wood (10%): growth, creativity
- Fire (5%): passion, recognition

**Lucky Guide:**
Colors: white, silver, gold, deep blue. Numbers: 1, 4, 6, 7, 8, 9. Directions: West, Northwest, North, Southwest.

**Home Blueprint:**
Entrance: amethyst cluster and good lighting. Living room: sofa facing West, rose quartz in the relationship corner. Office: desk in the commanding position facing Northwest.

**Specific Resolution to Your Questions:**
"{questions}"
1. Next 7 days: declutter your primary living space
2. Next 2-4 weeks: implement crystal placements and furniture changes
3. Next 2-3 months: establish routines aligned with your optimal timing
4. Six months on: review results and fine-tune

Feng shui is a tool for optimization; your personal energy and intention remain the most powerful factors in creating positive change.""",
}


@dataclass(frozen=True)
class ConsultationInput:
    consultation_type: ConsultationType
    birth_date: str
    birth_place: str
    questions: str
    birth_time: Optional[str] = None


@dataclass(frozen=True)
class GenerationResult:
    text: str
    source: str  # "openai" | "fallback"


def build_prompt(data: ConsultationInput) -> str:
    persona, depth, body = PROMPTS[data.consultation_type]
    header = _PROMPT_HEADER.format(
        persona=persona,
        depth=depth,
        birth_date=data.birth_date,
        birth_time=data.birth_time or "Not provided",
        birth_place=data.birth_place,
        questions=data.questions,
    )
    return header + body


def render_fallback(data: ConsultationInput) -> str:
    excerpt = data.questions if len(data.questions) <= 50 else data.questions[:50] + "..."
    text = FALLBACK_TEMPLATES[data.consultation_type].format(
        birth_date=data.birth_date,
        birth_place=data.birth_place,
        questions=data.questions,
        questions_excerpt=excerpt,
    )
    if not text.strip():
        raise RuntimeError(f"Fallback template for {data.consultation_type.value} rendered empty")
    return text


class ConsultationGenerator:
    def __init__(self, client: Optional[OpenAI], model: str = "gpt-4", temperature: float = 0.7):
        self.client = client
        self.model = model
        self.temperature = temperature

    def generate(self, data: ConsultationInput) -> GenerationResult:
        if self.client is None:
            logger.info("consultation_fallback_used", reason="not_configured",
                        consultation_type=data.consultation_type.value)
            return GenerationResult(render_fallback(data), "fallback")

        try:
            completion = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": build_prompt(data)},
                ],
                max_tokens=MAX_TOKENS[data.consultation_type],
                temperature=self.temperature,
            )
        except OpenAIError as exc:
            logger.warning("consultation_llm_failed", error=str(exc),
                           consultation_type=data.consultation_type.value)
            return GenerationResult(render_fallback(data), "fallback")

        try:
            content = (completion.choices[0].message.content or "").strip()
        except (AttributeError, IndexError, TypeError):
            logger.warning("consultation_llm_malformed", consultation_type=data.consultation_type.value)
            return GenerationResult(render_fallback(data), "fallback")

        if not content:
            logger.warning("consultation_llm_empty", consultation_type=data.consultation_type.value)
            return GenerationResult(render_fallback(data), "fallback")

        logger.info("consultation_generated", consultation_type=data.consultation_type.value)
        return GenerationResult(content, "openai")
