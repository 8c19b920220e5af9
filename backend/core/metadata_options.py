# backend/core/metadata_options.py
# 功能: 学习指纹元数据的固定选项表（label ↔ value）
# 主要函数: find_option_value_by_label(), get_option_label()
# 数据结构:
#   MetadataOption(value, label)
#   BEHAVIOUR_TAG_OPTIONS / COGNITIVE_SKILL_OPTIONS / LEARNING_PATTERN_OPTIONS

"""
元数据选项表

AI 返回的是人类可读的 label（例如 "Attention / focus"），
编辑器内部保存的是选项 value（例如 "attention"）。
两者之间只通过本模块的显式表格转换，不做任何模糊推断。
"""

from typing import NamedTuple, Optional, Sequence, Dict, Tuple


class MetadataOption(NamedTuple):
    value: str
    label: str


BEHAVIOUR_TAG_OPTIONS: Tuple[MetadataOption, ...] = (
    MetadataOption("attention", "Attention / focus"),
    MetadataOption("reflection", "Reflection"),
    MetadataOption("recall", "Recall / quiz"),
    MetadataOption("instruction", "Instruction / explanation"),
)

COGNITIVE_SKILL_OPTIONS: Tuple[MetadataOption, ...] = (
    MetadataOption("remember", "Remember"),
    MetadataOption("understand", "Understand"),
    MetadataOption("apply", "Apply"),
    MetadataOption("analyse", "Analyse"),
    MetadataOption("evaluate", "Evaluate"),
    MetadataOption("create", "Create"),
)

LEARNING_PATTERN_OPTIONS: Tuple[MetadataOption, ...] = (
    MetadataOption("microlearning", "Microlearning"),
    MetadataOption("scenario", "Scenario-based"),
    MetadataOption("spaced", "Spaced repetition"),
    MetadataOption("jobaid", "Job aid / reference"),
)

# 元数据字段 → 选项表
OPTIONS_BY_FIELD: Dict[str, Tuple[MetadataOption, ...]] = {
    "behaviour_tag": BEHAVIOUR_TAG_OPTIONS,
    "cognitive_skill": COGNITIVE_SKILL_OPTIONS,
    "learning_pattern": LEARNING_PATTERN_OPTIONS,
}


def find_option_value_by_label(
    options: Sequence[MetadataOption],
    label_or_value: Optional[str],
) -> Optional[str]:
    """
    按 label 或 value 查找选项值（忽略大小写和首尾空白）。

    找不到时返回 None，而不是强行套用某个选项。
    """
    if not isinstance(label_or_value, str):
        return None
    needle = label_or_value.strip().lower()
    if not needle:
        return None
    for option in options:
        if option.label.lower() == needle or option.value.lower() == needle:
            return option.value
    return None


def get_option_label(options: Sequence[MetadataOption], value: Optional[str]) -> Optional[str]:
    """value → label，用于给 AI 的提示词和展示"""
    for option in options:
        if option.value == value:
            return option.label
    return None
