"""LLM analysis of journal entries.

``EntryExtractor`` turns entry text into structured career data through
LangChain's ChatAnthropic. ``AnalysisService`` is what the job queue calls:
it loads the entry, reuses a cached extraction when possible, writes the
result back and upserts the extracted projects, skills and competencies.
"""

import asyncio
import json
import re
import time
from dataclasses import dataclass, asdict
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from langchain_anthropic import ChatAnthropic
from langchain_core.messages import HumanMessage, SystemMessage

from constants import (
    ANALYSIS_ENTITIES_INVALIDATES,
    ANALYSIS_ENTRY_INVALIDATES,
    OperationClass,
    SENTIMENTS,
)
from core.cache import CacheService
from core.config import Settings
from core.exceptions import JobExecutionError, RecordNotFoundError
from core.logging import get_logger, log_api_call, log_execution_time
from services.cached_database import CachedDatabase

logger = get_logger(__name__)

API_KEY_PATTERN = re.compile(r"sk-ant-[a-zA-Z0-9\-_]+")
CODE_FENCE_PATTERN = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)

MIN_ENTRY_LENGTH = 10
MAX_ITEMS = 50

EXTRACTION_SYSTEM_PROMPT = (
    "You analyze professional work journal entries and extract structured career data. "
    "Only extract information that is explicitly mentioned or clearly implied. "
    "Respond with a single JSON object and no additional text."
)

EXTRACTION_SCHEMA = """{
  "projects": [{"name": "...", "confidence": 0.0, "context": "...", "status": "active|completed|paused"}],
  "skills": [{"name": "...", "category": "technical|soft|domain", "confidence": 0.0, "context": "..."}],
  "competencies": [{"name": "...", "framework": "leadership|innovation|communication|problem_solving|teamwork|custom", "confidence": 0.0, "evidence": "..."}],
  "achievements": [{"description": "...", "impact": "business|team|personal|technical", "quantifiable": false, "metrics": "..."}],
  "people": [{"name": "...", "role": "colleague|manager|client|external", "interaction": "..."}],
  "keywords": ["..."],
  "sentiment": "positive|neutral|negative|mixed",
  "themes": ["..."],
  "work_location": "office|remote|hybrid|client_site|other",
  "time_spent": "estimated hours if mentioned",
  "next_actions": ["..."]
}"""

INSIGHTS_SYSTEM_PROMPT = (
    "You summarize a professional's analyzed work journal entries into career insights. "
    "Respond with a single JSON object with keys summary, key_achievements, growth_areas, "
    "top_skills and recommendations, and no additional text."
)


@dataclass
class AnalysisResult:
    """Outcome of one analysis; failures are reported, never raised."""
    success: bool
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    usage: Optional[Dict[str, int]] = None
    cached: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def sanitize_error(message: str) -> str:
    """Redact API keys that providers sometimes echo back in error messages."""
    return API_KEY_PATTERN.sub("[API_KEY_REDACTED]", message or "")


def build_context_section(context: Dict[str, Any]) -> str:
    lines = []
    if context.get("existing_projects"):
        lines.append(f"Existing Projects: {', '.join(context['existing_projects'])}")
    if context.get("existing_skills"):
        lines.append(f"Existing Skills: {', '.join(context['existing_skills'])}")
    if context.get("existing_competencies"):
        lines.append(f"Existing Competencies: {', '.join(context['existing_competencies'])}")
    if context.get("job_title"):
        lines.append(f"Job Title: {context['job_title']}")
    if context.get("industry"):
        lines.append(f"Industry: {context['industry']}")
    if not lines:
        return ""
    lines.append("Prefer names consistent with the existing data while still identifying new elements.")
    return "CONTEXT (user's existing data):\n" + "\n".join(lines) + "\n\n"


def build_analysis_prompt(entry_text: str, context: Dict[str, Any]) -> str:
    return (
        f"{build_context_section(context)}"
        f"JOURNAL ENTRY TO ANALYZE:\n\"\"\"\n{entry_text}\n\"\"\"\n\n"
        f"Return JSON with this structure:\n{EXTRACTION_SCHEMA}"
    )


def parse_json_reply(content: str) -> Dict[str, Any]:
    """Parse a model reply that should be a JSON object, tolerating code fences."""
    text = content.strip()
    fenced = CODE_FENCE_PATTERN.match(text)
    if fenced:
        text = fenced.group(1)
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        start, end = text.find("{"), text.rfind("}")
        if start == -1 or end <= start:
            raise ValueError("AI returned invalid JSON response")
        try:
            parsed = json.loads(text[start:end + 1])
        except json.JSONDecodeError as e:
            raise ValueError("AI returned invalid JSON response") from e
    if not isinstance(parsed, dict):
        raise ValueError("AI returned invalid JSON response")
    return parsed


def _validate_items(items: Any, required: Iterable[str]) -> List[Dict[str, Any]]:
    if not isinstance(items, list):
        return []
    cleaned = []
    for item in items:
        if not isinstance(item, dict) or not all(field in item for field in required):
            continue
        if "confidence" in item:
            try:
                confidence = float(item["confidence"])
            except (TypeError, ValueError):
                confidence = 0.0
            item["confidence"] = max(0.0, min(1.0, confidence))
        cleaned.append(item)
    return cleaned[:MAX_ITEMS]


def _string_list(value: Any, limit: int) -> List[str]:
    if not isinstance(value, list):
        return []
    return [str(v) for v in value][:limit]


def clean_extraction(result: Dict[str, Any]) -> Dict[str, Any]:
    """Normalize an extraction to the fixed shape stored on entries."""
    sentiment = result.get("sentiment")
    return {
        "projects": _validate_items(result.get("projects"), ["name", "confidence"]),
        "skills": _validate_items(result.get("skills"), ["name", "category", "confidence"]),
        "competencies": _validate_items(result.get("competencies"), ["name", "confidence"]),
        "achievements": _validate_items(result.get("achievements"), ["description"]),
        "people": _validate_items(result.get("people"), ["name"]),
        "keywords": _string_list(result.get("keywords"), 20),
        "sentiment": sentiment if sentiment in SENTIMENTS else "neutral",
        "themes": _string_list(result.get("themes"), 10),
        "work_location": result.get("work_location") or "other",
        "time_spent": result.get("time_spent") or None,
        "next_actions": _string_list(result.get("next_actions"), 5),
    }


def _content_text(content: Any) -> str:
    """Flatten a chat message's content (string or content blocks) to text."""
    if isinstance(content, str):
        return content
    parts = []
    for block in content or []:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type") == "text":
            parts.append(block.get("text", ""))
    return "".join(parts)


def _usage(response) -> Optional[Dict[str, int]]:
    metadata = getattr(response, "usage_metadata", None)
    if not metadata:
        return None
    input_tokens = metadata.get("input_tokens", 0)
    output_tokens = metadata.get("output_tokens", 0)
    return {
        "input_tokens": input_tokens,
        "output_tokens": output_tokens,
        "total_tokens": metadata.get("total_tokens", input_tokens + output_tokens),
    }


def parse_timeframe(timeframe: Optional[str], now: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    """Start and end (UTC) of a dashboard timeframe; unknown or ``all`` spans everything."""
    now = now or datetime.now(timezone.utc)
    if timeframe == "week":
        start = now - timedelta(days=7)
    elif timeframe == "month":
        start = datetime(now.year, now.month, 1, tzinfo=timezone.utc)
    elif timeframe == "quarter":
        start = datetime(now.year, (now.month - 1) // 3 * 3 + 1, 1, tzinfo=timezone.utc)
    elif timeframe == "year":
        start = datetime(now.year, 1, 1, tzinfo=timezone.utc)
    else:
        start = datetime(1970, 1, 1, tzinfo=timezone.utc)
    return start, now


def calculate_streak(entry_dates: Iterable[str], today: Optional[date] = None) -> int:
    """Consecutive days with an entry, ending today or yesterday."""
    today = today or datetime.now(timezone.utc).date()
    dates = set(entry_dates)
    day = today if today.isoformat() in dates else today - timedelta(days=1)
    streak = 0
    while day.isoformat() in dates:
        streak += 1
        day -= timedelta(days=1)
    return streak


class EntryExtractor:
    """Wraps ChatAnthropic; the model is created on first use."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self._model = None

    @property
    def configured(self) -> bool:
        return bool(self.settings.anthropic_api_key)

    def _get_model(self, max_tokens: Optional[int] = None, temperature: Optional[float] = None):
        if not self.configured:
            raise JobExecutionError("ANTHROPIC_API_KEY is not configured")
        if max_tokens is None and temperature is None:
            if self._model is None:
                self._model = self._create_model(self.settings.analysis_max_tokens,
                                                  self.settings.analysis_temperature)
            return self._model
        return self._create_model(max_tokens or self.settings.analysis_max_tokens,
                                  self.settings.analysis_temperature if temperature is None else temperature)

    def _create_model(self, max_tokens: int, temperature: float):
        return ChatAnthropic(
            anthropic_api_key=self.settings.anthropic_api_key,
            model=self.settings.analysis_model,
            temperature=temperature,
            max_tokens=max_tokens,
        )

    async def _complete(self, operation: str, system_prompt: str, prompt: str,
                        **model_kwargs) -> AnalysisResult:
        start_time = time.time()
        model_name = self.settings.analysis_model
        try:
            messages = [SystemMessage(content=system_prompt), HumanMessage(content=prompt)]
            response = await self._get_model(**model_kwargs).ainvoke(messages)
            data = parse_json_reply(_content_text(response.content))
            usage = _usage(response)

            log_execution_time(logger, operation, start_time, time.time())
            log_api_call(logger, "anthropic", model_name, operation, True, **(usage or {}))
            return AnalysisResult(success=True, data=data, usage=usage)

        except Exception as e:
            error = sanitize_error(str(e)) or f"{operation} failed"
            log_api_call(logger, "anthropic", model_name, operation, False, error=error)
            return AnalysisResult(success=False, error=error)

    async def extract(self, entry_text: str, context: Dict[str, Any]) -> AnalysisResult:
        """Extract career data from one entry."""
        if not entry_text or len(entry_text.strip()) < MIN_ENTRY_LENGTH:
            return AnalysisResult(success=False, error="Entry text is too short for meaningful analysis")

        result = await self._complete("entry_analysis", EXTRACTION_SYSTEM_PROMPT,
                                      build_analysis_prompt(entry_text, context))
        if result.success:
            result.data = clean_extraction(result.data)
        return result

    async def summarize(self, entries: List[Dict[str, Any]], timeframe: str) -> AnalysisResult:
        """Generate insights across already-analyzed entries."""
        lines = [f"Timeframe: {timeframe}. Entries: {len(entries)}."]
        for entry in entries:
            lines.append(f"{entry['date']}: {json.dumps(entry.get('extracted_data') or {}, default=str)}")
        return await self._complete("insights", INSIGHTS_SYSTEM_PROMPT, "\n".join(lines),
                                    max_tokens=6000, temperature=0.2)


class AnalysisService:
    """Analysis collaborator used by the job queue and the insights routes."""

    def __init__(self, cached_database: CachedDatabase, cache: CacheService, settings: Settings,
                 extractor: Optional[EntryExtractor] = None):
        self.db = cached_database
        self.cache = cache
        self.settings = settings
        self.extractor = extractor or EntryExtractor(settings)

    async def analyze_entry(self, entry_id: str, force_refresh: bool = False) -> AnalysisResult:
        """Analyze one entry and persist the extraction. Never raises."""
        try:
            entry = await self.db.find_unique("entry", {"id": entry_id})
            if entry is None:
                raise RecordNotFoundError("entry", {"id": entry_id})

            if not force_refresh:
                cached = await self.cache.get_cached_extraction(entry["raw_text"])
                if cached:
                    logger.info("Using cached extraction", entry_id=entry_id)
                    await self._update_entry(entry, cached)
                    return AnalysisResult(success=True, data=cached, cached=True)

            context = await self._user_context(entry["user_id"])
            result = await self.extractor.extract(entry["raw_text"], context)
            if not result.success:
                raise JobExecutionError(f"AI analysis failed: {result.error}")

            await self._update_entry(entry, result.data)
            await self._process_entities(entry["user_id"], result.data)
            await self.cache.cache_extraction(entry["raw_text"], result.data)

            logger.info("Entry analysis completed", entry_id=entry_id, usage=result.usage)
            return result

        except Exception as e:
            logger.error("Entry analysis failed", entry_id=entry_id, error=str(e))
            return AnalysisResult(success=False, error=sanitize_error(str(e)) or "Entry analysis failed")

    async def _user_context(self, user_id: str) -> Dict[str, Any]:
        user = await self.db.find_unique("user", {"id": user_id}) or {}
        projects = await self.db.get_cached_user_projects(user_id)
        skills = await self.db.find_many("skill", where={"user_id": user_id}, order_by="name")
        competencies = await self.db.find_many("competency", where={"user_id": user_id}, order_by="name")
        return {
            "existing_projects": [p["name"] for p in projects],
            "existing_skills": [s["name"] for s in skills],
            "existing_competencies": [c["name"] for c in competencies],
            "job_title": user.get("job_title"),
            "industry": user.get("industry"),
        }

    async def _update_entry(self, entry: Dict[str, Any], extracted: Dict[str, Any]) -> None:
        await self.db.update_and_invalidate_cache(
            "entry",
            {"id": entry["id"], "user_id": entry["user_id"]},
            {"extracted_data": extracted, "sentiment": extracted.get("sentiment")},
            ANALYSIS_ENTRY_INVALIDATES,
        )

    async def _process_entities(self, user_id: str, extracted: Dict[str, Any]) -> None:
        for project in extracted.get("projects", []):
            await self._upsert_entity("project", user_id, project)
        for skill in extracted.get("skills", []):
            await self._upsert_entity("skill", user_id, skill)
        for competency in extracted.get("competencies", []):
            await self._upsert_entity("competency", user_id, competency)
        await self.db.invalidate(user_id, ANALYSIS_ENTITIES_INVALIDATES)

    async def _upsert_entity(self, model: str, user_id: str, item: Dict[str, Any]) -> None:
        """Create or bump one extracted entity; a failure skips it."""
        name = str(item["name"])[:255]
        now = datetime.now(timezone.utc)
        create: Dict[str, Any] = {"user_id": user_id, "name": name}
        update: Dict[str, Any] = {}

        if model == "project":
            create.update(description=item.get("context") or item.get("description"),
                          status=item.get("status") or "active", entry_count=1)
            update["entry_count"] = {"increment": 1}
            if item.get("status"):
                update["status"] = item["status"]
        elif model == "skill":
            create.update(category=item.get("category") or "other", usage_count=1,
                          first_used=now, last_used=now)
            update.update(usage_count={"increment": 1}, last_used=now)
            if item.get("category"):
                update["category"] = item["category"]
        else:
            create.update(framework=item.get("framework") or "custom",
                          description=item.get("evidence") or item.get("description"),
                          demonstration_count=1, last_demonstrated=now)
            update.update(demonstration_count={"increment": 1}, last_demonstrated=now)
            if item.get("framework"):
                update["framework"] = item["framework"]

        try:
            await self.db.upsert(model, {"user_id": user_id, "name": name}, create, update)
        except Exception as e:
            logger.warning("Failed to upsert extracted entity", model=model, name=name, error=str(e))

    async def get_user_data_summary(self, user_id: str, timeframe: Optional[str] = None) -> Dict[str, Any]:
        """Projects, skills, competencies and analyzed entries for a timeframe (dashboard loader)."""
        where: Dict[str, Any] = {"user_id": user_id}
        if timeframe and timeframe != "all":
            start, end = parse_timeframe(timeframe)
            where["created_at"] = {"gte": start, "lte": end}

        projects, skills, competencies, entries = await asyncio.gather(
            self.db.find_many("project", where=where, order_by="-entry_count", op_class=OperationClass.MEDIUM),
            self.db.find_many("skill", where=where, order_by="-usage_count", op_class=OperationClass.MEDIUM),
            self.db.find_many("competency", where=where, order_by="-demonstration_count",
                              op_class=OperationClass.MEDIUM),
            self.db.find_many("entry", where={**where, "extracted_data": {"not": None}},
                              order_by="-date", op_class=OperationClass.MEDIUM),
        )
        entries = [
            {key: entry[key] for key in ("id", "date", "extracted_data", "sentiment", "word_count")}
            for entry in entries
        ]

        return {
            "projects": projects,
            "skills": skills,
            "competencies": competencies,
            "entries": entries,
            "summary": {
                "total_entries": len(entries),
                "total_projects": len(projects),
                "total_skills": len(skills),
                "total_competencies": len(competencies),
                "timeframe": timeframe,
            },
        }

    async def get_dashboard(self, user_id: str, timeframe: str) -> Dict[str, Any]:
        """Dashboard aggregate: the data summary plus the current writing streak."""
        data = await self.get_user_data_summary(user_id, timeframe)
        recent = await self.db.find_many("entry", where={"user_id": user_id}, order_by="-date", limit=30)
        data["summary"]["current_streak"] = calculate_streak(entry["date"] for entry in recent)
        return data

    async def generate_insights(self, user_id: str, timeframe: str) -> Dict[str, Any]:
        """LLM insights over analyzed entries, memoized per (user, timeframe)."""
        cached = await self.cache.get_cached_insights(user_id, timeframe)
        if cached is not None:
            return {**cached, "cached": True}

        user_data = await self.get_user_data_summary(user_id, timeframe)
        if not user_data["entries"]:
            return {
                "success": True,
                "data": {"message": "No entries with AI analysis found"},
                "summary": user_data["summary"],
                "cached": False,
            }

        result = await self.extractor.summarize(user_data["entries"], timeframe)
        response = {
            "success": result.success,
            "data": result.data,
            "error": result.error,
            "usage": result.usage,
            "summary": user_data["summary"],
        }
        if result.success:
            await self.cache.cache_insights(user_id, timeframe, response)
        return {**response, "cached": False}

    async def health_check(self) -> Dict[str, Any]:
        database = await self.db.health_check()
        llm_status = "configured" if self.extractor.configured else "not_configured"
        return {
            "status": "healthy" if database["status"] == "healthy" else "unhealthy",
            "services": {
                "llm": {"status": llm_status, "model": self.settings.analysis_model},
                "database": database,
                "cache": {"status": "available" if await self.cache.ping() else "unavailable"},
            },
        }
