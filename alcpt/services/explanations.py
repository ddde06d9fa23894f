"""
Google Gemini collaborator: structured Arabic explanations and question cleanup.

Explanations follow a fixed shape with Arabic keys. Every generated object is
validated against ``ArabicExplanation`` before anyone is allowed to persist it.
"""
import json
import logging
from typing import Any, Dict, List, Optional, Protocol

import google.generativeai as genai
import pydantic
from google.generativeai.types import GenerationConfig
from pydantic import BaseModel, ConfigDict, Field

from alcpt.core.config import settings
from alcpt.core.errors import CollaboratorFailure, ValidationError
from alcpt.models.orm import Question

logger = logging.getLogger(__name__)


# ============= Explanation shape =============

class _Aliased(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class KeywordPair(_Aliased):
    question_word: str = Field(alias="الكلمة_في_السؤال")
    answer_word: str = Field(alias="الكلمة_في_الإجابة")
    relation: str = Field(alias="العلاقة")


class LinguisticAnalysis(_Aliased):
    keywords: List[KeywordPair] = Field(alias="الكلمات_المفتاحية")
    grammar_structure: str = Field(alias="التركيب_النحوي")


class Rationale(_Aliased):
    main_reason: str = Field(alias="السبب_الرئيسي")
    evidence: str = Field(alias="الدليل_من_السؤال")
    full_meaning: str = Field(alias="المعنى_الكامل")


class WrongOption(_Aliased):
    option: str = Field(alias="الخيار")
    reason: str = Field(alias="سبب_الخطأ")


class WrongOptions(_Aliased):
    first: WrongOption = Field(alias="الخيار_الأول")
    second: WrongOption = Field(alias="الخيار_الثاني")
    third: WrongOption = Field(alias="الخيار_الثالث")


class ArabicExplanation(_Aliased):
    correct_answer: str = Field(alias="الإجابة_الصحيحة")
    linguistic_analysis: LinguisticAnalysis = Field(alias="التحليل_اللغوي")
    rationale: Rationale = Field(alias="شرح_الإجابة_الصحيحة")
    wrong_options: WrongOptions = Field(alias="تحليل_الخيارات_الخاطئة")
    grammar_rule: str = Field(alias="القاعدة_اللغوية")
    study_tip: str = Field(alias="نصيحة_للطالب")


def validate_explanation(obj: Any) -> Dict[str, Any]:
    """Return the canonical (Arabic-keyed) form of ``obj`` or raise ``ValidationError``."""
    try:
        parsed = ArabicExplanation.model_validate(obj)
    except pydantic.ValidationError as e:
        missing = [".".join(str(p) for p in err["loc"]) for err in e.errors()]
        raise ValidationError("Explanation does not match the required structure", detail={"fields": missing}) from e
    return parsed.model_dump(by_alias=True)


def _template() -> Dict[str, Any]:
    wrong = {"الخيار": "", "سبب_الخطأ": ""}
    return {
        "الإجابة_الصحيحة": "[CORRECT_ANSWER]",
        "التحليل_اللغوي": {
            "الكلمات_المفتاحية": [{"الكلمة_في_السؤال": "", "الكلمة_في_الإجابة": "", "العلاقة": ""}],
            "التركيب_النحوي": "",
        },
        "شرح_الإجابة_الصحيحة": {"السبب_الرئيسي": "", "الدليل_من_السؤال": "", "المعنى_الكامل": ""},
        "تحليل_الخيارات_الخاطئة": {
            "الخيار_الأول": dict(wrong),
            "الخيار_الثاني": dict(wrong),
            "الخيار_الثالث": dict(wrong),
        },
        "القاعدة_اللغوية": "",
        "نصيحة_للطالب": "",
    }


EXPLANATION_PROMPT = """You are an ALCPT English test explanation system. Generate the explanation in Arabic using EXACTLY this JSON structure. Do not vary the format.

INPUT:
- Question: {question_text}
- Correct Answer: {correct_answer}
- Wrong Options: {wrong_options}
- Question Type: {question_type}

REQUIRED OUTPUT STRUCTURE:
{template}

RULES:
1. Use only the structure above, no extra or missing keys
2. Write every explanation in clear, simple Modern Standard Arabic (الفصحى)
3. Link the keywords of the question directly to the answer
4. Fill every field; no empty strings
5. Cover the three wrong options in the order given

EXAMPLE INPUT:
Question: "The woman made toast for breakfast. What did she use?"
Correct Answer: "bread"
Wrong Options: ["oranges", "eggs", "milk"]

Respond with the JSON object only."""


def build_explanation_prompt(question: Question) -> str:
    return EXPLANATION_PROMPT.format(
        question_text=question.question_text,
        correct_answer=question.correct_answer,
        wrong_options=json.dumps(list(question.other_options or []), ensure_ascii=False),
        question_type=question.question_type,
        template=json.dumps(_template(), ensure_ascii=False, indent=2),
    )


# ============= Question formatting =============

class FormattedQuestion(BaseModel):
    question_text: str
    correct_answer: str
    other_options: List[str]
    explanation: Optional[str] = None


FORMAT_PROMPT = """You are a formatting expert for ALCPT (American Language Course Placement Test) questions.

Clean the raw question data below:
1. Remove answer prefixes such as "a.", "b.", "c.", "d." from every option
2. Make the question text clear and properly punctuated
3. Return the correct answer without any prefix
4. Add a short explanation of why the correct answer is right

Respond with JSON only, in this exact shape:
{{"question_text": "...", "correct_answer": "...", "other_options": ["...", "...", "..."], "explanation": "..."}}

Raw question data:
{raw}"""


# ============= Collaborator =============

class ExplanationCollaborator(Protocol):
    async def explain(self, question: Question) -> Dict[str, Any]: ...


class GeminiExplainer:
    """Gemini-backed explanation and formatting collaborator."""

    name = "gemini"

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        format_model: Optional[str] = None,
    ):
        if api_key is None and settings.GEMINI_API_KEY is not None:
            api_key = settings.GEMINI_API_KEY.get_secret_value()
        self.api_key = api_key
        self.model_name = model or settings.GEMINI_EXPLANATION_MODEL
        self.format_model_name = format_model or settings.GEMINI_FORMAT_MODEL
        if api_key:
            genai.configure(api_key=api_key)

    async def _generate_json(self, model_name: str, prompt: str) -> Any:
        if not self.api_key:
            raise CollaboratorFailure(self.name, "Gemini API key not configured")
        config = GenerationConfig(
            temperature=settings.GEMINI_TEMPERATURE,
            max_output_tokens=settings.GEMINI_MAX_OUTPUT_TOKENS,
            response_mime_type="application/json",
        )
        try:
            response = await genai.GenerativeModel(model_name).generate_content_async(
                prompt, generation_config=config
            )
            raw = response.text
        except Exception as e:
            raise CollaboratorFailure(self.name, str(e)) from e
        if not raw:
            raise CollaboratorFailure(self.name, "empty response from model")
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            raise CollaboratorFailure(self.name, f"response is not valid JSON: {e}") from e

    async def explain(self, question: Question) -> Dict[str, Any]:
        """
        Generate a validated Arabic explanation for ``question``.

        Raises:
            CollaboratorFailure: API failure, unparseable output, or an object
                that does not match the explanation structure
        """
        logger.info("Generating Arabic explanation for question %s", question.id)
        data = await self._generate_json(self.model_name, build_explanation_prompt(question))
        try:
            return validate_explanation(data)
        except ValidationError as e:
            raise CollaboratorFailure(self.name, e.message, detail=e.detail) from e

    async def format_question(self, raw: Dict[str, Any]) -> FormattedQuestion:
        prompt = FORMAT_PROMPT.format(raw=json.dumps(raw, ensure_ascii=False, indent=2))
        data = await self._generate_json(self.format_model_name, prompt)
        try:
            return FormattedQuestion.model_validate(data)
        except pydantic.ValidationError as e:
            raise CollaboratorFailure(self.name, "formatted question has the wrong shape") from e
