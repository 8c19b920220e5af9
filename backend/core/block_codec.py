# backend/core/block_codec.py
# 功能: 内容块 ↔ 持久化 JSON 的编解码，以及供 AI 使用的纯文本提取
# 主要函数:
#   - to_content_json(): Block → {blockType, content, metadata, style, animation, animationDuration}
#   - block_from_row(): ContentModuleBlock 行 → Block（兼容旧格式）
#   - db_type_for() / media_type_for(): 库中 type / media_type
#   - extract_block_text(): 块内容的纯文本（HTML 去标签，TipTap 文档取 text 节点）
#   - strip_html(): HTML → 纯文本

"""
内容块编解码

持久化格式（content_json）:
{
    "blockType": "paragraph-with-heading",
    "content": {"heading": "...", "body": "<p>...</p>"},
    "metadata": {"behaviourTag": ..., "fieldSources": {...}, ...},
    "style": {"style": "light", "customBackgroundColor": null},
    "animation": "none",
    "animationDuration": "normal"
}

简单类型（heading / subheading / paragraph）的 content 是字符串，其余是对象。
文字类块在库中的 type 统一为 "text"。
"""

import html
import logging
import re
from typing import Any, Dict, List, Optional, get_args


from core.block_schema import (
    Block,
    BlockMetadata,
    FieldSources,
    ListItem,
    HeadingContent,
    SubheadingContent,
    ParagraphContent,
    ParagraphWithHeadingContent,
    ParagraphWithSubheadingContent,
    ColumnsContent,
    TableContent,
    NumberedListContent,
    BulletListContent,
    ImageContent,
    ImageTextContent,
    Flashcard,
    FlashcardsContent,
    Tab,
    TabsContent,
    SortingCategory,
    SortingItem,
    SortingActivitySettings,
    SortingActivityContent,
    BLOCK_TYPES,
    BlockStyle,
    BlockAnimation,
    AnimationDuration,
    OrderedListStyle,
    BulletStyle,
)

logger = logging.getLogger("block_codec")


TEXT_BLOCK_TYPES = (
    "heading",
    "subheading",
    "paragraph",
    "paragraph-with-heading",
    "paragraph-with-subheading",
    "columns",
    "table",
)

IMAGE_BLOCK_TYPES = ("image-centered", "image-fullwidth", "image-text")

# 持久化 metadata 的 camelCase 键
_METADATA_KEYS = {
    "behaviour_tag": "behaviourTag",
    "cognitive_skill": "cognitiveSkill",
    "learning_pattern": "learningPattern",
    "difficulty": "difficulty",
    "notes": "notes",
    "source": "source",
    "ai_explanations": "aiExplanations",
    "ai_confidence_scores": "aiConfidenceScores",
}

_FIELD_SOURCE_KEYS = {
    "behaviour_tag": "behaviourTag",
    "cognitive_skill": "cognitiveSkill",
    "learning_pattern": "learningPattern",
    "difficulty": "difficulty",
}


def db_type_for(block_type: str) -> str:
    return "text" if block_type in TEXT_BLOCK_TYPES else block_type


def media_type_for(block_type: str) -> str:
    return "image" if block_type in IMAGE_BLOCK_TYPES else "text"


# ============== 编码 ==============

def _dump_items(items: List[ListItem]) -> List[Dict[str, Any]]:
    return [item.model_dump(exclude_none=True) for item in items]


def _encode_content(content) -> Any:
    if isinstance(content, HeadingContent):
        return content.heading
    if isinstance(content, SubheadingContent):
        return content.subheading
    if isinstance(content, ParagraphContent):
        return content.html
    if isinstance(content, ParagraphWithHeadingContent):
        return {"heading": content.heading, "body": content.html}
    if isinstance(content, ParagraphWithSubheadingContent):
        return {"subheading": content.subheading, "body": content.html}
    if isinstance(content, ColumnsContent):
        return {"columnOne": content.column_one_content, "columnTwo": content.column_two_content}
    if isinstance(content, TableContent):
        return {"tableContent": content.table_content, "borderMode": content.border_mode}
    if isinstance(content, NumberedListContent):
        return {
            "items": _dump_items(content.list_items),
            "startNumber": content.start_number,
            "listStyle": content.list_style,
            "subStyle": content.sub_style,
            "numberColor": content.number_color,
        }
    if isinstance(content, BulletListContent):
        return {
            "bulletItems": _dump_items(content.bullet_items),
            "bulletStyle": content.bullet_style,
            "bulletSubStyle": content.bullet_sub_style,
            "bulletColor": content.bullet_color,
        }
    if isinstance(content, ImageContent):
        return {
            "media_asset_id": content.media_asset_id,
            "alt_text": content.alt_text,
            "caption": content.caption,
            "public_url": content.public_url,
        }
    if isinstance(content, ImageTextContent):
        return {
            "media_asset_id": content.media_asset_id,
            "public_url": content.public_url,
            "alt_text": content.alt_text,
            "layout": {
                "imagePosition": content.image_position,
                "imageWidth": content.image_width,
            },
            "text": {"heading": content.heading, "body": content.body},
        }
    if isinstance(content, FlashcardsContent):
        return {
            "title": content.title,
            "cards": [
                {"id": card.id, "frontHtml": card.front_html, "backHtml": card.back_html}
                for card in content.cards
            ],
        }
    if isinstance(content, TabsContent):
        return {
            "title": content.title,
            "tabs": [
                {"id": tab.id, "title": tab.title, "content": tab.content}
                for tab in content.tabs
            ],
        }
    if isinstance(content, SortingActivityContent):
        return {
            "title": content.title,
            "instructions": content.instructions,
            "categories": [category.model_dump() for category in content.categories],
            "items": [
                {
                    "id": item.id,
                    "text": item.text,
                    "imageUrl": item.image_url,
                    "altText": item.alt_text,
                    "correctCategoryId": item.correct_category_id,
                    "feedbackCorrect": item.feedback_correct,
                    "feedbackIncorrect": item.feedback_incorrect,
                }
                for item in content.items
            ],
            "settings": {
                "randomizeOrder": content.settings.randomize_order,
                "allowRetry": content.settings.allow_retry,
                "showPerItemFeedback": content.settings.show_per_item_feedback,
            },
        }
    raise ValueError(f"Unsupported content type: {type(content).__name__}")


def encode_metadata(metadata: BlockMetadata) -> Dict[str, Any]:
    result = {
        camel: getattr(metadata, name)
        for name, camel in _METADATA_KEYS.items()
    }
    sources = {
        camel: getattr(metadata.field_sources, name)
        for name, camel in _FIELD_SOURCE_KEYS.items()
    }
    result["fieldSources"] = sources if any(sources.values()) else None
    return result


def to_content_json(block: Block) -> Dict[str, Any]:
    """Block → 持久化 JSON"""
    return {
        "blockType": block.type,
        "content": _encode_content(block.content),
        "metadata": encode_metadata(block.metadata),
        "style": {
            "style": block.style,
            "customBackgroundColor": block.custom_background_color,
        },
        "animation": block.animation,
        "animationDuration": block.animation_duration,
    }


# ============== 解码 ==============

def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _as_str(value: Any) -> str:
    return value if isinstance(value, str) else ""


def _choice(value: Any, literal_type, default: Any) -> Any:
    """value 在 Literal 取值范围内则返回 value，否则返回 default"""
    return value if value in get_args(literal_type) else default


def _decode_items(raw: Any) -> List[ListItem]:
    """容错解析列表项：超过两层的嵌套直接截断"""
    items = []
    for entry in raw if isinstance(raw, list) else []:
        if isinstance(entry, str):
            items.append(ListItem(body=entry))
            continue
        entry = _as_dict(entry)
        children = [
            ListItem(body=_as_str(_as_dict(child).get("body")))
            for child in entry.get("children") or []
            if isinstance(child, dict)
        ]
        items.append(ListItem(body=_as_str(entry.get("body")), children=children or None))
    return items or [ListItem(body="")]


def _image_width(raw: Any) -> int:
    """兼容旧数据中 0.25 / 0.5 / 0.75 的小数宽度"""
    if isinstance(raw, (int, float)):
        if raw <= 1:
            raw = raw * 100
        if raw in (25, 75):
            return int(raw)
    return 50


def _decode_content(block_type: str, raw: Any, media_asset_id: Optional[str] = None):
    data = _as_dict(raw)
    text = _as_str(raw)

    if block_type == "heading":
        return HeadingContent(heading=text or _as_str(data.get("heading")))
    if block_type == "subheading":
        return SubheadingContent(subheading=text or _as_str(data.get("subheading")))
    if block_type == "paragraph":
        return ParagraphContent(html=text or _as_str(data.get("body")))
    if block_type == "paragraph-with-heading":
        return ParagraphWithHeadingContent(
            heading=_as_str(data.get("heading")),
            html=text or _as_str(data.get("body")),
        )
    if block_type == "paragraph-with-subheading":
        return ParagraphWithSubheadingContent(
            subheading=_as_str(data.get("subheading")),
            html=text or _as_str(data.get("body")),
        )
    if block_type == "columns":
        return ColumnsContent(
            column_one_content=_as_str(data.get("columnOne")) or text,
            column_two_content=_as_str(data.get("columnTwo")),
        )
    if block_type == "table":
        border_mode = data.get("borderMode")
        return TableContent(
            table_content=data.get("tableContent") if isinstance(data.get("tableContent"), dict) else None,
            border_mode=border_mode if border_mode in ("normal", "dashed", "alternate") else "normal",
        )
    if block_type == "numbered-list":
        defaults = NumberedListContent()
        start = data.get("startNumber")
        return NumberedListContent(
            list_items=_decode_items(data.get("items")),
            start_number=start if isinstance(start, int) and start >= 1 else 1,
            list_style=_choice(data.get("listStyle"), OrderedListStyle, defaults.list_style),
            sub_style=_choice(data.get("subStyle"), OrderedListStyle, defaults.sub_style),
            number_color=data.get("numberColor") or defaults.number_color,
        )
    if block_type == "bullet-list":
        defaults = BulletListContent()
        return BulletListContent(
            bullet_items=_decode_items(data.get("bulletItems")),
            bullet_style=_choice(data.get("bulletStyle"), BulletStyle, defaults.bullet_style),
            bullet_sub_style=_choice(data.get("bulletSubStyle"), BulletStyle, defaults.bullet_sub_style),
            bullet_color=data.get("bulletColor") or defaults.bullet_color,
        )
    if block_type in ("image-centered", "image-fullwidth"):
        return ImageContent(
            block_type=block_type,
            media_asset_id=data.get("media_asset_id") or media_asset_id,
            alt_text=_as_str(data.get("alt_text")),
            caption=data.get("caption"),
            public_url=data.get("public_url") or _as_dict(data.get("image")).get("url"),
        )
    if block_type == "image-text":
        text_part = data.get("text")
        text_obj = _as_dict(text_part)
        layout = _as_dict(data.get("layout"))
        position = layout.get("imagePosition")
        return ImageTextContent(
            media_asset_id=data.get("media_asset_id") or media_asset_id,
            public_url=_as_dict(data.get("image")).get("url") or data.get("public_url"),
            alt_text=_as_str(data.get("alt_text")),
            image_position=position if position in ("left", "right") else "left",
            image_width=_image_width(layout.get("imageWidth")),
            heading=_as_str(text_obj.get("heading")),
            body=_as_str(text_obj.get("body")) or _as_str(text_part) or _as_str(data.get("body")),
        )
    if block_type == "flashcards":
        cards = [
            Flashcard(
                id=_as_dict(card).get("id") or Flashcard().id,
                front_html=_as_str(_as_dict(card).get("frontHtml")),
                back_html=_as_str(_as_dict(card).get("backHtml")),
            )
            for card in data.get("cards") or []
        ]
        return FlashcardsContent(title=_as_str(data.get("title")) or "Flashcards", cards=cards)
    if block_type == "tabs":
        tabs = [
            Tab(
                id=_as_dict(tab).get("id") or Tab().id,
                title=_as_str(_as_dict(tab).get("title")),
                content=_as_str(_as_dict(tab).get("content")),
            )
            for tab in data.get("tabs") or []
        ]
        return TabsContent(title=_as_str(data.get("title")), tabs=tabs)
    if block_type == "sorting_activity":
        return _decode_sorting_activity(data)
    raise ValueError(f"Unknown block type: {block_type}")


def _optional_str(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


def _decode_sorting_activity(data: Dict[str, Any]) -> SortingActivityContent:
    """分类 / 条目缺少 id 时按位置补齐；settings 缺失的键取默认值"""
    defaults = SortingActivityContent()
    categories = [
        SortingCategory(
            id=_as_str(_as_dict(raw).get("id")) or f"cat-{i + 1}",
            label=_as_str(_as_dict(raw).get("label")),
        )
        for i, raw in enumerate(data.get("categories") or [])
    ]
    items = []
    for i, raw in enumerate(data.get("items") or []):
        entry = _as_dict(raw)
        items.append(SortingItem(
            id=_as_str(entry.get("id")) or f"item-{i + 1}",
            text=_as_str(entry.get("text")),
            image_url=_optional_str(entry.get("imageUrl")),
            alt_text=_optional_str(entry.get("altText")),
            correct_category_id=_as_str(entry.get("correctCategoryId")),
            feedback_correct=_optional_str(entry.get("feedbackCorrect")),
            feedback_incorrect=_optional_str(entry.get("feedbackIncorrect")),
        ))
    settings_raw = _as_dict(data.get("settings"))
    settings = SortingActivitySettings(**{
        name: settings_raw[camel]
        for name, camel in (
            ("randomize_order", "randomizeOrder"),
            ("allow_retry", "allowRetry"),
            ("show_per_item_feedback", "showPerItemFeedback"),
        )
        if isinstance(settings_raw.get(camel), bool)
    })
    return SortingActivityContent(
        title=_as_str(data.get("title")) or defaults.title,
        instructions=_as_str(data.get("instructions")),
        categories=categories,
        items=items,
        settings=settings,
    )


def decode_metadata(raw: Any) -> BlockMetadata:
    """持久化 metadata → BlockMetadata；非法值按空处理"""
    data = _as_dict(raw)
    values = {name: data.get(camel) for name, camel in _METADATA_KEYS.items()}

    difficulty = values["difficulty"]
    if isinstance(difficulty, bool) or not isinstance(difficulty, (int, float)) or not 0 <= difficulty <= 10:
        values["difficulty"] = None
    else:
        values["difficulty"] = int(difficulty)
    if values["source"] not in ("ai", "human"):
        values["source"] = None
    for key in ("ai_explanations", "ai_confidence_scores"):
        if not isinstance(values[key], dict):
            values[key] = None
    for key in ("behaviour_tag", "cognitive_skill", "learning_pattern", "notes"):
        if not isinstance(values[key], str):
            values[key] = None

    sources_raw = _as_dict(data.get("fieldSources"))
    sources = {
        name: sources_raw.get(camel) if sources_raw.get(camel) in ("ai", "human") else None
        for name, camel in _FIELD_SOURCE_KEYS.items()
    }
    return BlockMetadata(field_sources=FieldSources(**sources), **values)


def resolve_block_type(row_type: Optional[str], content_json: Any) -> Optional[str]:
    """优先取 content_json.blockType；旧数据只有库中 type 时，text 视为 paragraph"""
    tagged = _as_dict(content_json).get("blockType")
    if tagged in BLOCK_TYPES:
        return tagged
    if row_type in BLOCK_TYPES:
        return row_type
    if row_type == "text":
        return "paragraph"
    return None


def block_from_row(row) -> Optional[Block]:
    """
    ContentModuleBlock 行 → Block。

    无法识别类型的行返回 None（调用方跳过）。
    """
    block_type = resolve_block_type(row.type, row.content_json)
    if block_type is None:
        logger.warning(f"跳过无法识别类型的内容块 {row.id} (type={row.type})")
        return None

    json_data = _as_dict(row.content_json)
    style_data = _as_dict(json_data.get("style"))

    values = {
        "id": row.id,
        "order_index": row.order_index or 0,
        "content": _decode_content(block_type, json_data.get("content"), row.media_asset_id),
        "metadata": decode_metadata(json_data.get("metadata")),
        "raw_ai_metadata": row.mbl_metadata,
        "saved_to_db": True,
    }
    return Block(
        **values,
        style=_choice(style_data.get("style"), BlockStyle, "light"),
        custom_background_color=style_data.get("customBackgroundColor") or None,
        animation=_choice(json_data.get("animation"), BlockAnimation, "none"),
        animation_duration=_choice(json_data.get("animationDuration"), AnimationDuration, "normal"),
    )


# ============== 纯文本提取 ==============

_SCRIPT_RE = re.compile(r"<(script|style)[^>]*>.*?</\1>", re.IGNORECASE | re.DOTALL)
_BLOCK_END_RE = re.compile(r"</(p|div|li|br|h[1-6])\s*>|<br\s*/?>", re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]+>")


def strip_html(value: Optional[str]) -> str:
    """HTML → 纯文本（去标签、反转义、合并空白）"""
    if not value:
        return ""
    text = _SCRIPT_RE.sub(" ", value)
    text = _BLOCK_END_RE.sub("\n", text)
    text = _TAG_RE.sub(" ", text)
    text = html.unescape(text).replace("\u00a0", " ")
    return re.sub(r"\s+", " ", text).strip()


def _tiptap_text(node: Any) -> List[str]:
    """递归收集 TipTap JSON 中所有 text 节点"""
    if isinstance(node, list):
        parts = []
        for child in node:
            parts.extend(_tiptap_text(child))
        return parts
    if not isinstance(node, dict):
        return []
    parts = []
    if node.get("type") == "text" and isinstance(node.get("text"), str):
        parts.append(node["text"])
    parts.extend(_tiptap_text(node.get("content")))
    return parts


def _item_texts(items: List[ListItem]) -> List[str]:
    parts = []
    for item in items:
        parts.append(strip_html(item.body))
        for child in item.children or []:
            parts.append(strip_html(child.body))
    return parts


def extract_block_text(block: Block) -> str:
    """块中可供 AI 分析的纯文本；空内容返回空字符串"""
    content = block.content
    if isinstance(content, HeadingContent):
        parts = [content.heading]
    elif isinstance(content, SubheadingContent):
        parts = [content.subheading]
    elif isinstance(content, ParagraphContent):
        parts = [strip_html(content.html)]
    elif isinstance(content, ParagraphWithHeadingContent):
        parts = [content.heading, strip_html(content.html)]
    elif isinstance(content, ParagraphWithSubheadingContent):
        parts = [content.subheading, strip_html(content.html)]
    elif isinstance(content, ColumnsContent):
        parts = [strip_html(content.column_one_content), strip_html(content.column_two_content)]
    elif isinstance(content, TableContent):
        parts = [" ".join(_tiptap_text(content.table_content))]
    elif isinstance(content, NumberedListContent):
        parts = _item_texts(content.list_items)
    elif isinstance(content, BulletListContent):
        parts = _item_texts(content.bullet_items)
    elif isinstance(content, ImageContent):
        parts = [content.alt_text, content.caption or ""]
    elif isinstance(content, ImageTextContent):
        parts = [content.heading, strip_html(content.body), content.alt_text]
    elif isinstance(content, FlashcardsContent):
        parts = [content.title]
        for card in content.cards:
            parts.extend([strip_html(card.front_html), strip_html(card.back_html)])
    elif isinstance(content, TabsContent):
        parts = [content.title]
        for tab in content.tabs:
            parts.extend([tab.title, strip_html(tab.content)])
    elif isinstance(content, SortingActivityContent):
        parts = [content.title, content.instructions]
        parts.extend(category.label for category in content.categories)
        parts.extend(item.text for item in content.items)
    else:
        parts = []
    return "\n".join(part.strip() for part in parts if part and part.strip())
