# backend/core/metadata_review.py
# 功能: 单个内容块的 AI 元数据工作流（生成 → 复核 → 逐字段采纳 / 忽略 → 应用）
# 主要类:
#   - MetadataReviewWorkflow: 每块一个的状态机
#   - SanityReview / FieldSuggestion: 复核结果及作者的逐字段决定
#   - WorkflowResult: 操作后的块 + 提示信息
# 主要函数:
#   - merge_ai_metadata(): AI 结果合并进已有元数据（AI 为空的字段保留原值）
#   - apply_accepted_fields(): 采纳的修改写入元数据
#   - apply_human_edit(): 作者直接编辑字段
# 状态:
#   idle → generating → generated → idle
#   generated → sanity_checking → reviewing → applying → idle
#   clear 任意状态可达，回到 idle；clear 之前发出的请求返回时结果被丢弃

"""
元数据复核工作流

错误分三类:
- 校验错误（MetadataValidationError）: 同步拒绝，不发起调用
- 传输错误（MetadataTransportError）: 服务调用失败，状态回到调用前
- 响应无内容: 按空结果处理，返回带提示的 WorkflowResult，不抛异常

同一块同一时间只能有一个进行中的转换；状态不允许时抛 WorkflowStateError。
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from core.block_codec import extract_block_text
from core.block_schema import Block, BlockMetadata, BLOCK_TYPES, METADATA_TAG_FIELDS
from core.errors import (
    MetadataTransportError,
    MetadataValidationError,
    WorkflowStateError,
)
from core.llm_compat import coerce_json_payload
from core.metadata_options import OPTIONS_BY_FIELD, find_option_value_by_label

logger = logging.getLogger("metadata_review")


class WorkflowState(str, Enum):
    IDLE = "idle"
    GENERATING = "generating"
    GENERATED = "generated"
    SANITY_CHECKING = "sanity_checking"
    REVIEWING = "reviewing"
    APPLYING = "applying"


# 所有块类型都有可提取的文本，都支持 AI 元数据
AI_SUPPORTED_BLOCK_TYPES = frozenset(BLOCK_TYPES)

MSG_SAVE_FIRST = "Please save the lesson before generating AI metadata."
MSG_NO_CONTENT = "This block has no content yet."
MSG_GENERATE_FAILED = "There was a problem generating AI metadata. Please try again."
MSG_NO_METADATA = "AI did not return metadata."
MSG_SANITY_FAILED = "Failed to run sanity check. Please try again."
MSG_SANITY_NO_RESPONSE = "No response from sanity checker."
MSG_APPLY_FAILED = "Failed to apply corrections. Please try again."
MSG_NOTHING_TO_APPLY = "No corrections to process."
MSG_APPLIED = "Metadata corrections applied successfully!"
MSG_CLEAR_FAILED = "Metadata was reset, but stored AI metadata could not be cleared. Please try again."
MSG_SUPERSEDED = "Metadata was cleared while the request was running."


@dataclass
class FieldSuggestion:
    original_value: str
    suggested_value: str
    reason: str
    confidence: Optional[float] = None
    decision: str = "accept"

    def to_dict(self) -> dict:
        return {
            "original_value": self.original_value,
            "suggested_value": self.suggested_value,
            "reason": self.reason,
            "confidence": self.confidence,
            "decision": self.decision,
        }


@dataclass
class SanityReview:
    fields: Dict[str, FieldSuggestion] = field(default_factory=dict)
    issues_found: int = 0
    checked_at: Optional[str] = None

    def accepted_fields(self) -> List[Dict[str, str]]:
        return [
            {"field_name": name, "suggested_value": suggestion.suggested_value}
            for name, suggestion in self.fields.items()
            if suggestion.decision == "accept"
        ]

    def ignored_field_names(self) -> List[str]:
        return [name for name, suggestion in self.fields.items() if suggestion.decision == "ignore"]

    def to_dict(self) -> dict:
        return {
            "fields": {name: suggestion.to_dict() for name, suggestion in self.fields.items()},
            "issues_found": self.issues_found,
            "checked_at": self.checked_at,
        }


@dataclass
class WorkflowResult:
    block: Block
    notice: Optional[str] = None
    # 调用期间元数据被清除，结果已丢弃
    stale: bool = False


# ============== 元数据合并 ==============

def _difficulty_or_none(value: Any) -> Optional[int]:
    """数值且在 0..10 内才接受；字符串形式的数字也接受"""
    if isinstance(value, bool):
        return None
    if isinstance(value, str):
        try:
            value = float(value.strip())
        except ValueError:
            return None
    if isinstance(value, (int, float)) and 0 <= value <= 10:
        return int(round(value))
    return None


def merge_ai_metadata(metadata: BlockMetadata, ai_meta: Dict[str, Any]) -> BlockMetadata:
    """
    AI 结果合并进已有元数据。

    AI 给出的 label 通过选项表映射为内部值，映射不到视为 None；
    AI 为 None 的字段保留原值及其来源；作者的 notes 始终保留。
    """
    ai_values = {
        name: find_option_value_by_label(options, ai_meta.get(name))
        for name, options in OPTIONS_BY_FIELD.items()
    }
    raw_difficulty = ai_meta.get("difficulty")
    ai_values["difficulty"] = (
        _difficulty_or_none(raw_difficulty) if isinstance(raw_difficulty, (int, float)) else None
    )

    values = {}
    sources = metadata.field_sources.model_copy()
    for name in METADATA_TAG_FIELDS:
        ai_value = ai_values[name]
        if ai_value is not None:
            values[name] = ai_value
            setattr(sources, name, "ai")
        else:
            values[name] = getattr(metadata, name)

    source = ai_meta.get("source")
    explanations = ai_meta.get("explanations")
    confidence_scores = ai_meta.get("confidence_scores")
    return metadata.model_copy(update={
        **values,
        "notes": metadata.notes,
        "source": source if source in ("ai", "human") else "ai",
        "field_sources": sources,
        "ai_explanations": explanations if isinstance(explanations, dict) else None,
        "ai_confidence_scores": confidence_scores if isinstance(confidence_scores, dict) else None,
    })


def apply_accepted_fields(metadata: BlockMetadata, accepted: List[Dict[str, str]]) -> BlockMetadata:
    """采纳的修改写入元数据；未知字段或无法映射的值不改动元数据"""
    updates = {}
    sources = metadata.field_sources.model_copy()
    for entry in accepted:
        name = entry.get("field_name")
        suggested = entry.get("suggested_value")
        if name in OPTIONS_BY_FIELD:
            value = find_option_value_by_label(OPTIONS_BY_FIELD[name], suggested)
        elif name == "difficulty":
            value = _difficulty_or_none(suggested)
        else:
            logger.warning(f"忽略未知字段的修改: {name}")
            continue
        if value is None:
            logger.warning(f"无法映射修改值 {name}={suggested!r}，保持原值")
            continue
        updates[name] = value
        setattr(sources, name, "ai")
    if not updates:
        return metadata
    return metadata.model_copy(update={**updates, "field_sources": sources})


def apply_human_edit(metadata: BlockMetadata, changes: Dict[str, Any]) -> BlockMetadata:
    """
    作者直接编辑元数据字段。

    "" 和 0 视为清空；被编辑的标签字段来源标记为 human。
    """
    updates = {}
    sources = metadata.field_sources.model_copy()
    for name, value in changes.items():
        if name not in METADATA_TAG_FIELDS and name != "notes":
            raise MetadataValidationError(f"Unknown metadata field: {name}")
        if value == "" or (value == 0 and not isinstance(value, bool)):
            value = None
        if value is not None:
            if name in OPTIONS_BY_FIELD:
                mapped = find_option_value_by_label(OPTIONS_BY_FIELD[name], value)
                if mapped is None:
                    raise MetadataValidationError(f"Invalid value for {name}: {value}")
                value = mapped
            elif name == "difficulty":
                mapped = _difficulty_or_none(value)
                if mapped is None:
                    raise MetadataValidationError("Difficulty must be a number between 0 and 10.")
                value = mapped
        updates[name] = value
        if name in METADATA_TAG_FIELDS:
            setattr(sources, name, "human")
    return metadata.model_copy(update={**updates, "field_sources": sources})


# ============== 工作流 ==============

class MetadataReviewWorkflow:
    """
    单个内容块的元数据工作流

    块本身由编辑会话持有，每次操作传入当前块，返回更新后的块。
    latest() 返回块的最新版本；AI 结果在响应到达时合并进最新版本，
    调用期间作者做的修改不会被覆盖。
    """

    def __init__(self, service, suggestion_log, persistence):
        self.service = service
        self.suggestion_log = suggestion_log
        self.persistence = persistence
        self.state = WorkflowState.IDLE
        self.review: Optional[SanityReview] = None
        # 每次 clear 加一；请求发出时记下，返回时不一致即为过期结果
        self._epoch = 0

    def _require_state(self, allowed, action: str) -> None:
        if self.state not in allowed:
            raise WorkflowStateError(
                f"Cannot {action} while metadata workflow is {self.state.value}."
            )

    async def _discard_stale(self, block: Block, action: str) -> WorkflowResult:
        """丢弃 clear 之前发出的请求的结果；服务端可能已重新写入 AI 原始元数据，再清一次"""
        logger.info(f"[{action}] 元数据已被清除，丢弃过期结果 block={block.id}")
        if block.saved_to_db:
            try:
                await self.persistence.clear_raw_ai_metadata(block.id)
            except Exception as e:
                logger.error(f"[{action}] 重新清除 mbl_metadata 失败 block={block.id}: {e}")
        return WorkflowResult(block=block, notice=MSG_SUPERSEDED, stale=True)

    # ---------- 生成 ----------

    async def generate(
        self,
        block: Block,
        latest: Optional[Callable[[], Block]] = None,
    ) -> WorkflowResult:
        """请求 AI 生成元数据并合并进块"""
        self._require_state((WorkflowState.IDLE, WorkflowState.GENERATED), "generate metadata")
        if block.type not in AI_SUPPORTED_BLOCK_TYPES:
            raise MetadataValidationError("AI metadata is not available for this block type.")
        if not block.saved_to_db:
            raise MetadataValidationError(MSG_SAVE_FIRST)
        content = extract_block_text(block)
        if not content:
            raise MetadataValidationError(MSG_NO_CONTENT)

        prior_state = self.state
        epoch = self._epoch
        self.state = WorkflowState.GENERATING
        payload = {
            "blockId": block.id,
            "blockType": block.type,
            "content": content,
            "notes": block.metadata.notes,
            "metadata": {
                "behaviourTag": block.metadata.behaviour_tag,
                "cognitiveSkill": block.metadata.cognitive_skill,
                "learningPattern": block.metadata.learning_pattern,
                "difficulty": block.metadata.difficulty,
            },
        }
        logger.info(f"[generate] block={block.id} type={block.type}")
        try:
            response = await self.service.generate_metadata(payload)
        except Exception as e:
            if epoch != self._epoch:
                return await self._discard_stale(block, "generate")
            self.state = prior_state
            logger.error(f"[generate] 调用失败 block={block.id}: {e}")
            raise MetadataTransportError(MSG_GENERATE_FAILED) from e
        if epoch != self._epoch:
            return await self._discard_stale(block, "generate")

        data = coerce_json_payload(response)
        if data.get("error"):
            self.state = prior_state
            logger.error(f"[generate] 服务返回错误 block={block.id}: {data['error']}")
            raise MetadataTransportError(MSG_GENERATE_FAILED)

        current = latest() if latest else block
        ai_meta = data.get("metadata")
        if not isinstance(ai_meta, dict) or not ai_meta:
            self.state = prior_state
            logger.warning(f"[generate] AI 未返回元数据 block={block.id}")
            return WorkflowResult(block=current, notice=MSG_NO_METADATA)

        merged = merge_ai_metadata(current.metadata, ai_meta)
        self.state = WorkflowState.GENERATED
        return WorkflowResult(
            block=current.model_copy(update={"metadata": merged, "raw_ai_metadata": ai_meta}),
        )

    # ---------- 复核 ----------

    async def run_sanity_check(self, block: Block) -> SanityReview:
        """
        对 AI 元数据做第二轮复核，生成逐字段的建议。

        响应中没有建议时回退到日志中未处理的建议；
        新的复核会直接丢弃尚未应用的旧复核。
        复核期间元数据被清除时抛 WorkflowStateError，状态保持 clear 之后的样子。
        """
        self._require_state(
            (WorkflowState.IDLE, WorkflowState.GENERATED, WorkflowState.REVIEWING),
            "run a sanity check",
        )
        if not block.saved_to_db:
            raise MetadataValidationError("Please save the lesson before running a sanity check.")
        if not block.raw_ai_metadata:
            raise MetadataValidationError("Generate AI metadata before running a sanity check.")

        prior_state, prior_review = self.state, self.review
        epoch = self._epoch
        self.state = WorkflowState.SANITY_CHECKING
        self.review = None

        def _restore():
            self.state, self.review = prior_state, prior_review

        def _check_current():
            if epoch != self._epoch:
                logger.info(f"[sanity_check] 元数据已被清除，丢弃复核结果 block={block.id}")
                raise WorkflowStateError(MSG_SUPERSEDED)

        payload = {
            "block_id": block.id,
            "block_content": extract_block_text(block),
            "ai1_metadata": block.raw_ai_metadata,
        }
        try:
            response = await self.service.sanity_check(payload)
        except Exception as e:
            _check_current()
            _restore()
            logger.error(f"[sanity_check] 调用失败 block={block.id}: {e}")
            raise MetadataTransportError(MSG_SANITY_FAILED) from e
        _check_current()

        if not response:
            _restore()
            raise MetadataTransportError(MSG_SANITY_NO_RESPONSE)

        data = coerce_json_payload(response)
        if data.get("error"):
            _restore()
            logger.error(f"[sanity_check] 服务返回错误 block={block.id}: {data['error']}")
            raise MetadataTransportError(str(data["error"]) or "Sanity check failed.")

        suggestions = data.get("suggestions")
        suggestions = suggestions if isinstance(suggestions, list) else []
        if not suggestions:
            try:
                suggestions = await self.suggestion_log.pending_suggestions(block.id)
            except Exception as e:
                logger.error(f"[sanity_check] 查询未处理建议失败 block={block.id}: {e}")
                suggestions = []
            _check_current()

        fields: Dict[str, FieldSuggestion] = {}
        for suggestion in suggestions:
            if not isinstance(suggestion, dict) or not suggestion.get("field_name"):
                continue
            confidence = suggestion.get("confidence")
            fields[suggestion["field_name"]] = FieldSuggestion(
                original_value=str(suggestion.get("original_value") or ""),
                suggested_value=str(suggestion.get("suggested_value") or ""),
                reason=str(suggestion.get("reason") or ""),
                confidence=confidence if isinstance(confidence, (int, float)) else None,
            )

        self.review = SanityReview(
            fields=fields,
            issues_found=len(fields),
            checked_at=data.get("checked_at"),
        )
        self.state = WorkflowState.REVIEWING
        logger.info(f"[sanity_check] block={block.id} issues={len(fields)}")
        return self.review

    def set_decision(self, field_name: str, decision: str) -> SanityReview:
        """作者切换某字段的 accept / ignore；纯本地操作"""
        self._require_state((WorkflowState.REVIEWING,), "change a review decision")
        if decision not in ("accept", "ignore"):
            raise MetadataValidationError(f"Invalid decision: {decision}")
        if self.review is None or field_name not in self.review.fields:
            raise MetadataValidationError(f"No suggestion for field: {field_name}")
        self.review.fields[field_name].decision = decision
        return self.review

    def dismiss_review(self) -> None:
        """关闭复核面板，丢弃未应用的复核"""
        self._require_state(
            (WorkflowState.IDLE, WorkflowState.GENERATED, WorkflowState.REVIEWING),
            "dismiss the review",
        )
        self.review = None
        self.state = WorkflowState.IDLE

    # ---------- 应用 ----------

    async def apply_corrections(
        self,
        block: Block,
        latest: Optional[Callable[[], Block]] = None,
    ) -> WorkflowResult:
        """
        应用复核结果。

        采纳的字段发送到修改接口并写入元数据；采纳和忽略的字段都在日志中标记为已处理。
        修改接口失败时复核保持不变，作者可以重试。
        """
        self._require_state((WorkflowState.REVIEWING,), "apply corrections")
        review = self.review
        accepted = review.accepted_fields() if review else []
        ignored = review.ignored_field_names() if review else []
        if not accepted and not ignored:
            return WorkflowResult(block=block, notice=MSG_NOTHING_TO_APPLY)

        epoch = self._epoch
        self.state = WorkflowState.APPLYING
        raw_ai_metadata = None
        if accepted:
            try:
                response = await self.service.apply_corrections({
                    "block_id": block.id,
                    "accepted_fields": accepted,
                })
            except Exception as e:
                if epoch != self._epoch:
                    return await self._discard_stale(block, "apply")
                self.state = WorkflowState.REVIEWING
                logger.error(f"[apply] 调用失败 block={block.id}: {e}")
                raise MetadataTransportError(MSG_APPLY_FAILED) from e
            if epoch != self._epoch:
                return await self._discard_stale(block, "apply")

            data = coerce_json_payload(response)
            if data.get("error"):
                self.state = WorkflowState.REVIEWING
                raise MetadataTransportError(str(data["error"]))
            raw_ai_metadata = data.get("updated")

        await self._mark_processed(block.id, [entry["field_name"] for entry in accepted], True)
        await self._mark_processed(block.id, ignored, False)
        if epoch != self._epoch:
            return await self._discard_stale(block, "apply")

        current = latest() if latest else block
        updated = current.model_copy(update={
            "metadata": apply_accepted_fields(current.metadata, accepted),
            "raw_ai_metadata": current.raw_ai_metadata if raw_ai_metadata is None else raw_ai_metadata,
        })
        self.review = None
        self.state = WorkflowState.IDLE
        logger.info(f"[apply] block={block.id} accepted={len(accepted)} ignored={len(ignored)}")
        return WorkflowResult(block=updated, notice=MSG_APPLIED)

    async def _mark_processed(self, block_id: str, field_names: List[str], accepted: bool) -> None:
        if not field_names:
            return
        try:
            await self.suggestion_log.mark_processed(block_id, field_names, accepted)
        except Exception as e:
            # 日志更新失败不回滚已应用的修改
            logger.error(f"[apply] 更新复核日志失败 block={block_id} accepted={accepted}: {e}")

    # ---------- 清除 ----------

    async def clear(
        self,
        block: Block,
        latest: Optional[Callable[[], Block]] = None,
    ) -> WorkflowResult:
        """重置元数据；已持久化的块同时清除库中的 AI 原始元数据"""
        self._epoch += 1
        self.review = None
        self.state = WorkflowState.IDLE

        if not block.saved_to_db:
            return WorkflowResult(block=block.model_copy(update={
                "metadata": BlockMetadata(),
                "raw_ai_metadata": None,
            }))

        try:
            await self.persistence.clear_raw_ai_metadata(block.id)
        except Exception as e:
            logger.error(f"[clear] 清除 mbl_metadata 失败 block={block.id}: {e}")
            current = latest() if latest else block
            return WorkflowResult(
                block=current.model_copy(update={"metadata": BlockMetadata()}),
                notice=MSG_CLEAR_FAILED,
            )
        current = latest() if latest else block
        return WorkflowResult(block=current.model_copy(update={
            "metadata": BlockMetadata(),
            "raw_ai_metadata": None,
        }))
