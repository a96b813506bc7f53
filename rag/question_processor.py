"""
Question processing for portal chat.

Validates visitor questions (non-empty, length limit), detects the
CV topic a question is about, and extracts keywords. Topics are stored on
messages so analytics can roll them up.
"""

import re
import logging
from typing import Dict, List, Optional, Tuple
from enum import Enum
from dataclasses import dataclass, field

from chat.errors import InvalidInputError
from etl.config import CHAT_CONFIG


class QuestionTopic(Enum):
    """CV topics a visitor question can target."""
    EXPERIENCE = "experience"
    SKILLS = "skills"
    EDUCATION = "education"
    PROJECTS = "projects"
    CERTIFICATIONS = "certifications"
    ACHIEVEMENTS = "achievements"
    LANGUAGES = "languages"
    CONTACT = "contact"
    GENERAL = "general"


@dataclass
class ProcessedQuestion:
    """Validated question with detected topic."""
    original_text: str
    cleaned_text: str
    topic: QuestionTopic
    keywords: List[str] = field(default_factory=list)
    confidence_score: float = 0.0


STOP_WORDS = {
    'what', 'which', 'where', 'when', 'does', 'have', 'about', 'tell', 'their',
    'they', 'them', 'with', 'this', 'that', 'from', 'your', 'there', 'would',
    'could', 'should', 'more', 'some', 'into', 'been', 'were',
}


class QuestionProcessor:
    """Keyword-based topic detection and input validation for chat questions."""

    def __init__(self, max_length: int = CHAT_CONFIG['max_message_length']):
        self.max_length = max_length
        self.logger = logging.getLogger(__name__)

        self.topic_keywords: Dict[QuestionTopic, List[str]] = {
            QuestionTopic.EXPERIENCE: [
                'experience', 'work', 'job', 'role', 'position', 'company', 'employer',
                'career', 'responsibilit', 'worked', 'working',
            ],
            QuestionTopic.SKILLS: [
                'skill', 'technolog', 'stack', 'language', 'framework', 'tool',
                'competenc', 'expertise', 'proficien', 'know',
            ],
            QuestionTopic.EDUCATION: [
                'education', 'degree', 'university', 'college', 'school', 'study',
                'studied', 'graduat', 'academic', 'diploma',
            ],
            QuestionTopic.PROJECTS: ['project', 'portfolio', 'built', 'side project', 'open source'],
            QuestionTopic.CERTIFICATIONS: ['certif', 'license', 'accredit', 'credential'],
            QuestionTopic.ACHIEVEMENTS: ['achievement', 'award', 'accomplish', 'recognition', 'highlight'],
            QuestionTopic.LANGUAGES: ['speak', 'spoken', 'fluent', 'bilingual', 'native'],
            QuestionTopic.CONTACT: ['contact', 'email', 'phone', 'reach', 'linkedin', 'hire'],
        }

    def validate_question(self, text: Optional[str]) -> str:
        """Return the trimmed question or raise InvalidInputError."""
        trimmed = (text or '').strip()
        if not trimmed:
            raise InvalidInputError("Message is required")
        if len(trimmed) > self.max_length:
            raise InvalidInputError(f"Message too long (max {self.max_length} characters)")
        return trimmed

    def detect_topic(self, text: str) -> Tuple[QuestionTopic, float]:
        """Score each topic by keyword hits; the first topic wins ties."""
        lowered = text.lower()
        best_topic = QuestionTopic.GENERAL
        best_hits = 0
        total_hits = 0
        for topic, keywords in self.topic_keywords.items():
            hits = sum(1 for keyword in keywords if keyword in lowered)
            total_hits += hits
            if hits > best_hits:
                best_topic, best_hits = topic, hits
        confidence = best_hits / total_hits if total_hits else 0.0
        return best_topic, confidence

    def extract_keywords(self, text: str) -> List[str]:
        keywords: List[str] = []
        for token in re.findall(r"[a-zA-Z][a-zA-Z+#.\-]{2,}", text.lower()):
            token = token.strip('.-')
            if len(token) > 3 and token not in STOP_WORDS and token not in keywords:
                keywords.append(token)
        return keywords

    def process_question(self, text: str, explicit_topic: Optional[str] = None) -> ProcessedQuestion:
        cleaned = self.validate_question(text)
        topic, confidence = self.detect_topic(cleaned)
        if explicit_topic:
            try:
                topic, confidence = QuestionTopic(explicit_topic.strip().lower()), 1.0
            except ValueError:
                self.logger.debug(f"Ignoring unknown explicit topic: {explicit_topic}")

        return ProcessedQuestion(
            original_text=text,
            cleaned_text=cleaned,
            topic=topic,
            keywords=self.extract_keywords(cleaned),
            confidence_score=confidence,
        )
