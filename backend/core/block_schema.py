# backend/core/block_schema.py
# 功能: 课时编辑器内容块的数据模型
# 主要类: Block, BlockMetadata, FieldSources, BlockLayout, ListItem, 各类型 Content
# 主要函数: new_block(), default_content()
# 数据结构:
#   Block.content 是按 block_type 区分的联合类型（discriminated union），
#   Block.type 由 content 派生，类型与内容不可能不一致

"""
内容块数据模型

一个 Block 是课时页面中的一个内容单元。
- order_index 只由 block_store 写入
- metadata 是学习指纹（行为标签 / 认知技能 / 学习模式 / 难度）
- raw_ai_metadata 是 AI 最近一次返回的原始结果，独立于 metadata 清除
- saved_to_db 表示该块是否至少持久化过一次（AI 接口需要持久化后的 id）
"""

import uuid
from typing import Optional, List, Dict, Any, Union, Literal, Annotated

from pydantic import BaseModel, Field, field_validator


BlockType = Literal[
    "heading",
    "subheading",
    "paragraph",
    "paragraph-with-heading",
    "paragraph-with-subheading",
    "columns",
    "table",
    "numbered-list",
    "bullet-list",
    "image-centered",
    "image-fullwidth",
    "image-text",
    "flashcards",
    "tabs",
    "sorting_activity",
]

BLOCK_TYPES = {
    "heading": "标题",
    "subheading": "副标题",
    "paragraph": "段落",
    "paragraph-with-heading": "带标题段落",
    "paragraph-with-subheading": "带副标题段落",
    "columns": "双栏",
    "table": "表格",
    "numbered-list": "编号列表",
    "bullet-list": "项目符号列表",
    "image-centered": "居中图片",
    "image-fullwidth": "通栏图片",
    "image-text": "图文",
    "flashcards": "闪卡",
    "tabs": "选项卡",
    "sorting_activity": "分类排序活动",
}

BlockStyle = Literal["light", "gray", "theme", "themeTint", "dark", "black", "custom", "image"]
BlockAnimation = Literal[
    "none", "fade-in", "slide-up", "slide-down", "slide-left", "slide-right", "zoom-in", "bounce"
]
AnimationDuration = Literal["fast", "normal", "slow", "very-slow"]
OrderedListStyle = Literal["decimal", "lower-alpha", "upper-alpha", "lower-roman", "upper-roman"]
BulletStyle = Literal["disc", "circle", "square", "dash", "check"]
SizeOption = Literal["S", "M", "L"]
Provenance = Literal["ai", "human"]

DEFAULT_LIST_COLOR = "#f97316"


def generate_block_id() -> str:
    return str(uuid.uuid4())


# ============== 元数据 ==============

class FieldSources(BaseModel):
    """每个标签字段的来源（ai / human / None）"""
    behaviour_tag: Optional[Provenance] = None
    cognitive_skill: Optional[Provenance] = None
    learning_pattern: Optional[Provenance] = None
    difficulty: Optional[Provenance] = None


class BlockMetadata(BaseModel):
    """学习指纹元数据，默认全部为空"""
    behaviour_tag: Optional[str] = None
    cognitive_skill: Optional[str] = None
    learning_pattern: Optional[str] = None
    difficulty: Optional[int] = Field(default=None, ge=0, le=10)
    notes: Optional[str] = None
    source: Optional[Provenance] = None
    field_sources: FieldSources = Field(default_factory=FieldSources)
    ai_explanations: Optional[Dict[str, Any]] = None
    ai_confidence_scores: Optional[Dict[str, Any]] = None


# 四个可由 AI 填写的标签字段
METADATA_TAG_FIELDS = ("behaviour_tag", "cognitive_skill", "learning_pattern", "difficulty")


# ============== 布局 ==============

class BlockLayout(BaseModel):
    content_width: SizeOption = "M"
    padding_size: SizeOption = "M"
    padding_top: int = 60
    padding_bottom: int = 60


# ============== 列表项 ==============

class ListItem(BaseModel):
    """
    列表项（编号列表 / 项目符号列表共用）

    最多两层：children 中的项不能再有非空 children。
    空的 children 一律归一为 None。
    """
    body: str = ""
    children: Optional[List["ListItem"]] = None

    @field_validator("children")
    @classmethod
    def _check_depth(cls, value):
        if not value:
            return None
        for child in value:
            if child.children:
                raise ValueError("list items support at most two levels of nesting")
        return value


# ============== 各类型内容 ==============

class HeadingContent(BaseModel):
    block_type: Literal["heading"] = "heading"
    heading: str = ""


class SubheadingContent(BaseModel):
    block_type: Literal["subheading"] = "subheading"
    subheading: str = ""


class ParagraphContent(BaseModel):
    block_type: Literal["paragraph"] = "paragraph"
    html: str = ""


class ParagraphWithHeadingContent(BaseModel):
    block_type: Literal["paragraph-with-heading"] = "paragraph-with-heading"
    heading: str = ""
    html: str = ""


class ParagraphWithSubheadingContent(BaseModel):
    block_type: Literal["paragraph-with-subheading"] = "paragraph-with-subheading"
    subheading: str = ""
    html: str = ""


class ColumnsContent(BaseModel):
    block_type: Literal["columns"] = "columns"
    column_one_content: str = ""
    column_two_content: str = ""


def _empty_table() -> Dict[str, Any]:
    """2x2 的空 TipTap 表格文档"""
    rows = [
        {
            "type": "tableRow",
            "content": [
                {"type": "tableCell", "content": [{"type": "paragraph"}]}
                for _ in range(2)
            ],
        }
        for _ in range(2)
    ]
    return {"type": "doc", "content": [{"type": "table", "content": rows}]}


class TableContent(BaseModel):
    block_type: Literal["table"] = "table"
    table_content: Optional[Dict[str, Any]] = Field(default_factory=_empty_table)
    border_mode: Literal["normal", "dashed", "alternate"] = "normal"


def _three_items() -> List[ListItem]:
    return [ListItem(body="") for _ in range(3)]


class NumberedListContent(BaseModel):
    block_type: Literal["numbered-list"] = "numbered-list"
    list_items: List[ListItem] = Field(default_factory=_three_items)
    start_number: int = Field(default=1, ge=1)
    list_style: OrderedListStyle = "decimal"
    sub_style: OrderedListStyle = "lower-alpha"
    number_color: str = DEFAULT_LIST_COLOR


class BulletListContent(BaseModel):
    block_type: Literal["bullet-list"] = "bullet-list"
    bullet_items: List[ListItem] = Field(default_factory=_three_items)
    bullet_style: BulletStyle = "disc"
    bullet_sub_style: BulletStyle = "circle"
    bullet_color: str = DEFAULT_LIST_COLOR


class ImageContent(BaseModel):
    """居中图片 / 通栏图片"""
    block_type: Literal["image-centered", "image-fullwidth"] = "image-centered"
    media_asset_id: Optional[str] = None
    alt_text: str = ""
    caption: Optional[str] = None
    public_url: Optional[str] = None


class ImageTextContent(BaseModel):
    block_type: Literal["image-text"] = "image-text"
    media_asset_id: Optional[str] = None
    public_url: Optional[str] = None
    alt_text: str = ""
    image_position: Literal["left", "right"] = "left"
    image_width: Literal[25, 50, 75] = 50
    heading: str = ""
    body: str = ""


class Flashcard(BaseModel):
    id: str = Field(default_factory=generate_block_id)
    front_html: str = ""
    back_html: str = ""


class FlashcardsContent(BaseModel):
    block_type: Literal["flashcards"] = "flashcards"
    title: str = "Flashcards"
    cards: List[Flashcard] = Field(default_factory=lambda: [Flashcard()])


class Tab(BaseModel):
    id: str = Field(default_factory=generate_block_id)
    title: str = ""
    content: str = ""


class TabsContent(BaseModel):
    block_type: Literal["tabs"] = "tabs"
    title: str = ""
    tabs: List[Tab] = Field(
        default_factory=lambda: [Tab(title="Tab 1"), Tab(title="Tab 2")]
    )


class SortingCategory(BaseModel):
    id: str
    label: str = ""


class SortingItem(BaseModel):
    """待分类的条目；correct_category_id 必须指向某个分类"""
    id: str
    text: str = ""
    image_url: Optional[str] = None
    alt_text: Optional[str] = None
    correct_category_id: str
    feedback_correct: Optional[str] = None
    feedback_incorrect: Optional[str] = None


class SortingActivitySettings(BaseModel):
    randomize_order: bool = True
    allow_retry: bool = False
    show_per_item_feedback: bool = True


def _default_categories() -> List[SortingCategory]:
    return [
        SortingCategory(id="cat-1", label="Category 1"),
        SortingCategory(id="cat-2", label="Category 2"),
    ]


def _default_sorting_items() -> List[SortingItem]:
    return [
        SortingItem(id="item-1", text="Item 1", correct_category_id="cat-1"),
        SortingItem(id="item-2", text="Item 2", correct_category_id="cat-2"),
        SortingItem(id="item-3", text="Item 3", correct_category_id="cat-1"),
    ]


class SortingActivityContent(BaseModel):
    block_type: Literal["sorting_activity"] = "sorting_activity"
    title: str = "Sorting activity"
    instructions: str = "Drag each item into the correct category."
    categories: List[SortingCategory] = Field(default_factory=_default_categories)
    items: List[SortingItem] = Field(default_factory=_default_sorting_items)
    settings: SortingActivitySettings = Field(default_factory=SortingActivitySettings)


BlockContent = Annotated[
    Union[
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
        FlashcardsContent,
        TabsContent,
        SortingActivityContent,
    ],
    Field(discriminator="block_type"),
]


# ============== 内容块 ==============

class Block(BaseModel):
    """
    内容块

    Attributes:
        id: 块 ID（首次保存时可能被持久化层替换）
        order_index: 排序键，结构操作后总是 0..n-1
        style / custom_background_color / layout / animation / animation_duration: 展示属性
        metadata: 学习指纹
        raw_ai_metadata: AI 原始元数据
        saved_to_db: 是否已持久化
        content: 按类型区分的内容
    """
    id: str = Field(default_factory=generate_block_id)
    order_index: float = 0
    style: BlockStyle = "light"
    custom_background_color: Optional[str] = None
    layout: BlockLayout = Field(default_factory=BlockLayout)
    animation: BlockAnimation = "none"
    animation_duration: AnimationDuration = "normal"
    metadata: BlockMetadata = Field(default_factory=BlockMetadata)
    raw_ai_metadata: Optional[Any] = None
    saved_to_db: bool = False
    content: BlockContent

    @property
    def type(self) -> str:
        return self.content.block_type


def default_content(block_type: str) -> BaseModel:
    """返回指定类型的默认内容"""
    if block_type not in BLOCK_TYPES:
        raise ValueError(f"Unknown block type: {block_type}")
    if block_type in ("image-centered", "image-fullwidth"):
        return ImageContent(block_type=block_type)
    content_cls = {
        "heading": HeadingContent,
        "subheading": SubheadingContent,
        "paragraph": ParagraphContent,
        "paragraph-with-heading": ParagraphWithHeadingContent,
        "paragraph-with-subheading": ParagraphWithSubheadingContent,
        "columns": ColumnsContent,
        "table": TableContent,
        "numbered-list": NumberedListContent,
        "bullet-list": BulletListContent,
        "image-text": ImageTextContent,
        "flashcards": FlashcardsContent,
        "tabs": TabsContent,
        "sorting_activity": SortingActivityContent,
    }[block_type]
    return content_cls()


def new_block(block_type: str, **overrides) -> Block:
    """创建一个带默认内容的新块（尚未持久化）"""
    return Block(content=default_content(block_type), **overrides)


def list_items_of(block: Block) -> Optional[List[ListItem]]:
    """列表类块的列表项；非列表块返回 None"""
    if isinstance(block.content, NumberedListContent):
        return block.content.list_items
    if isinstance(block.content, BulletListContent):
        return block.content.bullet_items
    return None


def with_list_items(block: Block, items: List[ListItem]) -> Block:
    """返回替换了列表项的新块"""
    if isinstance(block.content, NumberedListContent):
        content = block.content.model_copy(update={"list_items": items})
    elif isinstance(block.content, BulletListContent):
        content = block.content.model_copy(update={"bullet_items": items})
    else:
        raise ValueError(f"Block {block.id} is not a list block")
    return block.model_copy(update={"content": content})
