"""
LLM response generation for portal chat.
"""

import logging
import os
import time
from typing import List, Optional
from dataclasses import dataclass, field
import asyncio

import google.generativeai as genai
from google.generativeai.types import HarmCategory, HarmBlockThreshold

from chat.errors import GenerationError
from etl.config import GENERATION_CONFIG
from rag.context_builder import ChatContext, ContextBuilder
from rag.retrieval_engine import RetrievalResult
from monitoring.metrics import observe as metrics_observe, inc as metrics_inc


SECTION_FOLLOW_UPS = {
    'experience': [
        "Tell me more about their work experience",
        "What are their key responsibilities?",
        "Which companies have they worked for?",
    ],
    'education': [
        "What is their educational background?",
        "What degrees do they have?",
        "Where did they study?",
    ],
    'skills': [
        "What are their main skills?",
        "What technologies do they know?",
        "What are their core competencies?",
    ],
    'projects': [
        "What projects have they worked on?",
        "Can you tell me about their notable projects?",
        "What kind of project experience do they have?",
    ],
    'certifications': [
        "What certifications do they have?",
        "Are they certified in any technologies?",
        "What professional certifications have they earned?",
    ],
}

GENERAL_FOLLOW_UPS = [
    "What makes them a good candidate?",
    "Can you summarize their background?",
    "What are their career highlights?",
]

MAX_FOLLOW_UPS = 3

WELCOME_TEMPLATES = {
    'en': "Hello! I'm an AI assistant here to help you learn more about {name}, a {title}. I can answer questions about their experience, skills, projects, education, and any other details from their CV. What would you like to know?",
    'es': "¡Hola! Soy un asistente de IA aquí para ayudarte a conocer más sobre {name}, un/a {title}. Puedo responder preguntas sobre su experiencia, habilidades, proyectos, educación y otros detalles de su CV. ¿Qué te gustaría saber?",
    'fr': "Bonjour ! Je suis un assistant IA ici pour vous aider à en savoir plus sur {name}, un/e {title}. Je peux répondre à des questions sur son expérience, ses compétences, ses projets, son éducation et d'autres détails de son CV. Que souhaitez-vous savoir ?",
}

FALLBACK_WELCOME_TEMPLATES = {
    'en': "Hello! I'm an AI assistant here to help you learn more about {name}, a {title}. Feel free to ask me about their experience, skills, projects, or any other questions you might have.",
    'es': "¡Hola! Soy un asistente de IA aquí para ayudarte a conocer más sobre {name}, un/a {title}. Siéntete libre de preguntarme sobre su experiencia, habilidades, proyectos o cualquier otra pregunta que puedas tener.",
    'fr': "Bonjour ! Je suis un assistant IA ici pour vous aider à en savoir plus sur {name}, un/e {title}. N'hésitez pas à me poser des questions sur son expérience, ses compétences, ses projets ou toute autre question que vous pourriez avoir.",
}


def _render_welcome(templates, name: Optional[str], title: Optional[str], language: Optional[str]) -> str:
    template = templates.get((language or 'en').lower(), templates['en'])
    return template.format(name=name or 'this professional', title=title or 'professional')


def fallback_welcome_message(cv_owner_name: Optional[str], cv_title: Optional[str], language: Optional[str] = 'en') -> str:
    """Deterministic welcome used when retrieval is unavailable"""
    return _render_welcome(FALLBACK_WELCOME_TEMPLATES, cv_owner_name, cv_title, language)


def suggest_follow_ups(sources: List[str]) -> List[str]:
    """Up to three follow-up questions: one per cited known section, padded with general ones"""
    suggestions: List[str] = []
    for section in sources:
        options = SECTION_FOLLOW_UPS.get(section.lower())
        if options and options[0] not in suggestions:
            suggestions.append(options[0])
        if len(suggestions) >= MAX_FOLLOW_UPS:
            return suggestions

    for suggestion in GENERAL_FOLLOW_UPS:
        if len(suggestions) >= MAX_FOLLOW_UPS:
            break
        if suggestion not in suggestions:
            suggestions.append(suggestion)
    return suggestions


@dataclass
class GeneratedAnswer:
    message: str
    sources: List[str]
    confidence: float
    follow_ups: List[str] = field(default_factory=list)
    processing_time: float = 0.0


class ResponseGenerator:
    def __init__(
        self,
        api_key: Optional[str] = None,
        model_name: str = GENERATION_CONFIG['model'],
        context_builder: Optional[ContextBuilder] = None,
        max_attempts: int = GENERATION_CONFIG['max_attempts'],
        base_delay: float = GENERATION_CONFIG['base_delay'],
    ):
        self.logger = logging.getLogger(__name__)

        api_key = api_key or os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_API_KEY")
        if not api_key:
            raise ValueError("Missing API key: set GEMINI_API_KEY or GOOGLE_API_KEY, or pass api_key param")
        genai.configure(api_key=api_key)
        self.model_name = model_name
        self.context_builder = context_builder or ContextBuilder()
        self.max_attempts = max_attempts
        self.base_delay = base_delay

        self.model = genai.GenerativeModel(
            model_name=model_name,
            safety_settings={
                HarmCategory.HARM_CATEGORY_HATE_SPEECH: HarmBlockThreshold.BLOCK_MEDIUM_AND_ABOVE,
                HarmCategory.HARM_CATEGORY_DANGEROUS_CONTENT: HarmBlockThreshold.BLOCK_MEDIUM_AND_ABOVE,
                HarmCategory.HARM_CATEGORY_SEXUALLY_EXPLICIT: HarmBlockThreshold.BLOCK_MEDIUM_AND_ABOVE,
                HarmCategory.HARM_CATEGORY_HARASSMENT: HarmBlockThreshold.BLOCK_MEDIUM_AND_ABOVE,
            }
        )

        self.generation_config = genai.types.GenerationConfig(
            temperature=GENERATION_CONFIG['temperature'],
            top_p=GENERATION_CONFIG['top_p'],
            max_output_tokens=GENERATION_CONFIG['max_output_tokens'],
            candidate_count=1
        )

    async def generate(self, query: str, retrieval: RetrievalResult, chat_context: ChatContext) -> GeneratedAnswer:
        """Answer `query` from the retrieved CV content.

        Sources and confidence come straight from the retrieval result. Callers own
        the timeout and the fallback; failures surface as GenerationError.
        """
        start_time = time.time()
        constructed = self.context_builder.build_context(query, retrieval, chat_context)

        self.logger.info(
            f"Generating response with {self.model_name}: "
            f"chunks={constructed.context_metadata['num_chunks']}, template={constructed.prompt_template.value}"
        )

        try:
            text = await self._call_gemini_api(constructed.formatted_prompt)
        except GenerationError:
            await metrics_inc("rag_response_errors_total")
            raise
        except Exception as e:
            await metrics_inc("rag_response_errors_total")
            raise GenerationError(f"Failed to generate AI response: {e}") from e

        processing_time = time.time() - start_time
        await metrics_observe("rag_response_seconds", processing_time)

        answer = GeneratedAnswer(
            message=text.strip(),
            sources=list(retrieval.sources),
            confidence=retrieval.confidence,
            follow_ups=suggest_follow_ups(retrieval.sources),
            processing_time=processing_time,
        )
        self.logger.info(
            f"Generated response: confidence={answer.confidence:.2f}, "
            f"sources={answer.sources}, time={processing_time:.2f}s"
        )
        return answer

    async def _call_gemini_api(self, prompt: str) -> str:
        for attempt in range(self.max_attempts):
            try:
                response = await asyncio.to_thread(
                    self.model.generate_content,
                    prompt,
                    generation_config=self.generation_config
                )
            except Exception as e:
                if attempt < self.max_attempts - 1:
                    delay = self.base_delay * (2 ** attempt)
                    self.logger.warning(
                        f"Gemini API call failed (attempt {attempt+1}/{self.max_attempts}): {e}. Retrying in {delay:.2f}s"
                    )
                    await asyncio.sleep(delay)
                    continue
                self.logger.error(f"Error calling Gemini API after retries: {e}")
                await metrics_inc("llm_api_errors_total")
                raise

            if response.candidates:
                candidate = response.candidates[0]
                if candidate.content and candidate.content.parts:
                    text = candidate.content.parts[0].text
                    if text and text.strip():
                        return text

            raise GenerationError("No valid response generated by Gemini API")

        raise GenerationError("Gemini API call did not complete")

    def generate_welcome_message(self, chat_context: ChatContext) -> str:
        return _render_welcome(
            WELCOME_TEMPLATES, chat_context.cv_owner_name, chat_context.cv_title, chat_context.language
        )
