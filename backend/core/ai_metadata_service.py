# backend/core/ai_metadata_service.py
# 功能: AI 元数据服务契约及基于 LangChain 的实现
# 主要类:
#   - AIMetadataService: generate_metadata / sanity_check / apply_corrections 三个接口
#   - LLMMetadataService: 调用 Chat 模型生成 / 复核元数据，写 mbl_metadata 和复核日志
# 数据结构:
#   generate_metadata({blockId, blockType, content, notes, metadata}) -> {metadata: {...snake_case, label 字符串}}
#   sanity_check({block_id, block_content, ai1_metadata}) -> {suggestions, checked_at, issues_found} | {error}
#   apply_corrections({block_id, accepted_fields}) -> {updated} | {error}

"""
AI 元数据服务

生成结果中的标签字段是人类可读的 label（如 "Attention / focus"），
由工作流负责映射为内部选项值。
复核（sanity check）给出逐字段的修改建议，并写入 metadata_review_log，
以便页面重新加载后还能继续处理未决建议。
"""

import json
import logging
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from langchain_core.messages import SystemMessage, HumanMessage
from sqlalchemy.exc import SQLAlchemyError

from core.config import settings
from core.database import get_session_maker
from core.llm import get_chat_model, resolve_metadata_model
from core.llm_compat import normalize_content, parse_json_response, parse_json_list
from core.metadata_options import (
    BEHAVIOUR_TAG_OPTIONS,
    COGNITIVE_SKILL_OPTIONS,
    LEARNING_PATTERN_OPTIONS,
    get_option_label,
)
from core.models import ContentModuleBlock
from core.persistence import SuggestionLog, SqlSuggestionLog, SANITY_CHECKER

logger = logging.getLogger("ai_metadata")

REVIEWABLE_FIELDS = ("behaviour_tag", "cognitive_skill", "learning_pattern", "difficulty")


class AIMetadataService(ABC):
    """AI 元数据服务契约"""

    @abstractmethod
    async def generate_metadata(self, payload: Dict[str, Any]) -> Union[Dict[str, Any], str]:
        ...

    @abstractmethod
    async def sanity_check(self, payload: Dict[str, Any]) -> Union[Dict[str, Any], str]:
        ...

    @abstractmethod
    async def apply_corrections(self, payload: Dict[str, Any]) -> Union[Dict[str, Any], str]:
        ...


# ============== 提示词 ==============

def _labels(options) -> str:
    return ", ".join(f'"{option.label}"' for option in options)


GENERATE_SYSTEM_PROMPT = f"""You are a learning design assistant for an LMS (Learning Management System).
Analyse a single lesson block and describe how it contributes to learning.

Return ONLY a JSON object with these keys:
- behaviour_tag: one of {_labels(BEHAVIOUR_TAG_OPTIONS)}, or null
- cognitive_skill: one of {_labels(COGNITIVE_SKILL_OPTIONS)}, or null
- learning_pattern: one of {_labels(LEARNING_PATTERN_OPTIONS)}, or null
- difficulty: integer 0-10 (0 = trivial, 10 = highly complex), or null
- explanations: object mapping each field above to one sentence explaining the choice
- confidence_scores: object mapping each field above to a number between 0 and 1

Use null when the content gives no reasonable basis for a field."""


# 当前元数据的键 → 选项表
_CURRENT_METADATA_OPTIONS = {
    "behaviourTag": BEHAVIOUR_TAG_OPTIONS,
    "cognitiveSkill": COGNITIVE_SKILL_OPTIONS,
    "learningPattern": LEARNING_PATTERN_OPTIONS,
}


def _current_metadata_labels(metadata: Dict[str, Any]) -> Dict[str, Any]:
    """把编辑器内部的选项值换成提示词里使用的 label；未知值原样保留"""
    result = {}
    for key, value in metadata.items():
        options = _CURRENT_METADATA_OPTIONS.get(key)
        result[key] = (get_option_label(options, value) or value) if options else value
    return result


SANITY_SYSTEM_PROMPT = """You are a metadata QA assistant for an LMS (Learning Management System). You will review block metadata and return a JSON array of corrections for fields that are inconsistent, inaccurate, or logically flawed.

Review these fields:
- behaviour_tag: Should match the content's purpose (instruction, assessment, reflection, etc.)
- cognitive_skill: Should align with what the learner is actually doing (remember, understand, apply, analyse, evaluate, create)
- learning_pattern: Should match how the content is structured (microlearning, scenario-based, spaced-repetition, etc.)
- difficulty: Should be 0-10 and match the actual complexity of the content

Return ONLY a JSON array of corrections. If everything looks correct, return an empty array [].

Use this shape for each correction:
{
  "field_name": "difficulty",
  "original_value": "7",
  "suggested_value": "5",
  "reason": "The task is simple reflection and does not warrant a high difficulty.",
  "confidence": 0.85
}

Be constructive and explain why changes are needed."""


async def _call_llm(
    system_prompt: str,
    user_message: str,
    step: str,
    model: Optional[str] = None,
    temperature: float = 0.3,
) -> str:
    """封装 LLM 调用，返回归一化后的响应文本"""
    messages = [
        SystemMessage(content=system_prompt),
        HumanMessage(content=user_message),
    ]
    start_time = time.time()
    chat = get_chat_model(model=model, temperature=temperature)
    response = await chat.ainvoke(messages)
    duration_ms = int((time.time() - start_time) * 1000)
    logger.info(f"[{step}] LLM 调用完成 model={model or 'default'} {duration_ms}ms")
    return normalize_content(response.content)


def _normalize_generation(data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """模型输出 → aiMeta；没有任何可用字段时返回 None"""
    if not data:
        return None
    meta: Dict[str, Any] = {}
    for key in ("behaviour_tag", "cognitive_skill", "learning_pattern"):
        value = data.get(key)
        meta[key] = value if isinstance(value, str) and value.strip() else None
    difficulty = data.get("difficulty")
    meta["difficulty"] = (
        difficulty
        if isinstance(difficulty, (int, float)) and not isinstance(difficulty, bool)
        else None
    )
    if all(meta[key] is None for key in REVIEWABLE_FIELDS):
        return None
    meta["source"] = "ai"
    meta["explanations"] = data.get("explanations") if isinstance(data.get("explanations"), dict) else None
    meta["confidence_scores"] = (
        data.get("confidence_scores") if isinstance(data.get("confidence_scores"), dict) else None
    )
    meta["generated_at"] = datetime.now(timezone.utc).isoformat()
    return meta


def _normalize_suggestions(raw: List[Any]) -> List[Dict[str, Any]]:
    suggestions = []
    for entry in raw:
        if not isinstance(entry, dict):
            continue
        field_name = entry.get("field_name")
        if field_name not in REVIEWABLE_FIELDS:
            continue
        confidence = entry.get("confidence")
        suggestions.append({
            "field_name": field_name,
            "original_value": "" if entry.get("original_value") is None else str(entry.get("original_value")),
            "suggested_value": "" if entry.get("suggested_value") is None else str(entry.get("suggested_value")),
            "reason": str(entry.get("reason") or ""),
            "confidence": confidence if isinstance(confidence, (int, float)) else None,
        })
    return suggestions


def _correction_value(field_name: str, value: Any) -> Any:
    if field_name == "difficulty":
        try:
            return int(float(value))
        except (TypeError, ValueError):
            return value
    return value


class LLMMetadataService(AIMetadataService):
    """
    基于 LangChain Chat 模型的元数据服务

    - 生成结果保存到 content_module_blocks.mbl_metadata
    - 复核建议记录到 metadata_review_log（created_by = ai-sanity-checker）
    - 采纳的修改写回 mbl_metadata 并返回 {updated}
    """

    def __init__(self, session_factory=None, suggestion_log: Optional[SuggestionLog] = None):
        self._session_factory = session_factory or get_session_maker()
        self._suggestion_log = suggestion_log or SqlSuggestionLog(self._session_factory)

    def _store_raw_metadata(self, block_id: str, raw: Any) -> bool:
        db = self._session_factory()
        try:
            row = db.get(ContentModuleBlock, block_id)
            if row is None:
                logger.warning(f"内容块 {block_id} 不存在，未保存 mbl_metadata")
                return False
            row.mbl_metadata = raw
            db.commit()
            return True
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"保存 mbl_metadata 失败 {block_id}: {e}")
            return False
        finally:
            db.close()

    def _load_raw_metadata(self, block_id: str) -> Optional[Dict[str, Any]]:
        db = self._session_factory()
        try:
            row = db.get(ContentModuleBlock, block_id)
            if row is None:
                return None
            return dict(row.mbl_metadata) if isinstance(row.mbl_metadata, dict) else {}
        finally:
            db.close()

    async def generate_metadata(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        block_id = payload.get("blockId")
        user_message = (
            f"Block type: {payload.get('blockType')}\n\n"
            f"Block content:\n{payload.get('content') or ''}\n\n"
            f"Author notes: {payload.get('notes') or 'None'}\n\n"
            f"Current metadata:\n{json.dumps(_current_metadata_labels(payload.get('metadata') or {}), indent=2)}"
        )
        response_text = await _call_llm(
            GENERATE_SYSTEM_PROMPT,
            user_message,
            step="generate_metadata",
            model=resolve_metadata_model(),
        )
        meta = _normalize_generation(parse_json_response(response_text))
        if meta is None:
            logger.warning(f"AI 未返回可用元数据 block={block_id}")
            return {"metadata": None}

        if block_id:
            self._store_raw_metadata(block_id, meta)
        return {"metadata": meta}

    async def sanity_check(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        block_id = payload.get("block_id")
        ai1_metadata = payload.get("ai1_metadata")
        if not ai1_metadata:
            return {"error": "No ai1_metadata provided"}

        block_content = str(payload.get("block_content") or "")[:500] or "No content"
        user_message = (
            "Please review this block metadata:\n\n"
            f"Block Content Preview:\n{block_content}\n\n"
            f"AI-Generated Metadata:\n{json.dumps(ai1_metadata, indent=2, default=str)}"
        )
        response_text = await _call_llm(
            SANITY_SYSTEM_PROMPT,
            user_message,
            step="sanity_check",
            model=settings.sanity_check_model or None,
            temperature=settings.sanity_check_temperature,
        )
        suggestions = _normalize_suggestions(parse_json_list(response_text, key="suggestions"))

        if suggestions and block_id:
            try:
                await self._suggestion_log.record_suggestions(block_id, suggestions, SANITY_CHECKER)
            except Exception as e:
                # 日志写入失败不影响本次复核结果
                logger.error(f"记录复核建议失败 block={block_id}: {e}")

        return {
            "suggestions": suggestions,
            "checked_at": datetime.now(timezone.utc).isoformat(),
            "issues_found": len(suggestions),
        }

    async def apply_corrections(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        block_id = payload.get("block_id")
        accepted_fields = payload.get("accepted_fields") or []
        raw = self._load_raw_metadata(block_id) if block_id else None
        if raw is None:
            return {"error": "Block not found."}

        for field in accepted_fields:
            field_name = field.get("field_name")
            if field_name not in REVIEWABLE_FIELDS:
                logger.warning(f"忽略未知字段的修改 block={block_id} field={field_name}")
                continue
            raw[field_name] = _correction_value(field_name, field.get("suggested_value"))
        raw["corrections_applied_at"] = datetime.now(timezone.utc).isoformat()

        if not self._store_raw_metadata(block_id, raw):
            return {"error": "Failed to save corrected metadata."}
        logger.info(f"已应用 {len(accepted_fields)} 条元数据修改 block={block_id}")
        return {"updated": raw}
