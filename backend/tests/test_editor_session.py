# backend/tests/test_editor_session.py
# 功能: 页面编辑会话的测试
# 覆盖: 加载、插入菜单、结构操作、内容/外观/元数据编辑、列表操作、面板、保存（含 id 回写）、
#       元数据工作流接入、搜索防抖、会话注册表

"""
LessonEditorSession 测试
持久化层使用内存实现，AI 服务用替身。
"""

import asyncio

import pytest

from core.block_schema import Block, BlockMetadata, HeadingContent, ParagraphContent
from core.editor_session import MSG_SAVED, LessonEditorSession, SessionRegistry
from core.errors import BlockNotFoundError, BlockValidationError, PersistenceError, WorkflowStateError
from core.metadata_review import MSG_APPLIED, WorkflowState
from core.persistence import PersistenceAdapter, SuggestionLog


class MemoryPersistence(PersistenceAdapter):
    """内存持久化；reassign_ids=True 时模拟持久化层分配新 id"""

    def __init__(self, blocks=None, reassign_ids=False, fail_upsert=False, fail_on=None):
        self.blocks = list(blocks or [])
        self.reassign_ids = reassign_ids
        self.fail_upsert = fail_upsert
        # 第 fail_on 次 upsert（从 1 开始）失败
        self.fail_on = fail_on
        self.attempts = 0
        self.upserts = []
        self.deleted = []
        self.cleared = []

    async def load_blocks(self, page_id):
        return list(self.blocks)

    async def upsert_block(self, params):
        self.attempts += 1
        if self.fail_upsert or self.attempts == self.fail_on:
            raise RuntimeError("disk full")
        self.upserts.append(params)
        if self.reassign_ids and not params.id.startswith("db-"):
            return f"db-{len(self.upserts)}"
        return params.id

    async def delete_block(self, block_id):
        self.deleted.append(block_id)

    async def clear_raw_ai_metadata(self, block_id):
        self.cleared.append(block_id)


class MemoryLog(SuggestionLog):
    def __init__(self):
        self.marked = []

    async def pending_suggestions(self, block_id):
        return []

    async def record_suggestions(self, block_id, suggestions, created_by="ai-sanity-checker"):
        return 0

    async def mark_processed(self, block_id, field_names, accepted):
        self.marked.append((block_id, list(field_names), accepted))
        return len(field_names)


class ScriptedService:
    def __init__(self):
        self.generate_gate = None
        self.sanity_gate = None

    async def generate_metadata(self, payload):
        if self.generate_gate is not None:
            await self.generate_gate.wait()
        return {"metadata": {"behaviour_tag": "Instruction / explanation", "difficulty": 2}}

    async def sanity_check(self, payload):
        if self.sanity_gate is not None:
            await self.sanity_gate.wait()
        return {"suggestions": [{
            "field_name": "difficulty",
            "original_value": "2",
            "suggested_value": "4",
            "reason": "More complex than it looks.",
            "confidence": 0.6,
        }]}

    async def apply_corrections(self, payload):
        return {"updated": {"difficulty": 4}}


def _session(persistence=None, service=None):
    return LessonEditorSession(
        "page-1",
        persistence=persistence or MemoryPersistence(),
        service=service or ScriptedService(),
        suggestion_log=MemoryLog(),
        debounce_ms=0,
    )


def _saved(block_id, text, order_index=0):
    return Block(id=block_id, order_index=order_index, content=HeadingContent(heading=text), saved_to_db=True)


class TestStructure:
    """测试结构操作"""

    @pytest.mark.asyncio
    async def test_load_renormalizes(self):
        persistence = MemoryPersistence([_saved("a", "A", 3), _saved("b", "B", 7)])
        session = _session(persistence)
        blocks = await session.load()
        assert [b.order_index for b in blocks] == [0, 1]
        assert session.has_unsaved_changes is False

    def test_insert_uses_pending_index(self):
        session = _session()
        first = session.insert_block("heading")
        second = session.insert_block("heading")
        session.open_insert_menu(0)
        inserted = session.insert_block("paragraph")
        assert [b.id for b in session.blocks] == [inserted.id, first.id, second.id]
        assert session.pending_insert_index is None
        assert session.has_unsaved_changes is True

    def test_insert_unknown_type(self):
        with pytest.raises(BlockValidationError):
            _session().insert_block("video")

    def test_move_and_duplicate(self):
        session = _session()
        a = session.insert_block("heading")
        b = session.insert_block("paragraph")
        session.move_block(b.id, "up")
        assert [blk.id for blk in session.blocks] == [b.id, a.id]

        copy = session.duplicate_block(b.id)
        assert [blk.id for blk in session.blocks] == [b.id, copy.id, a.id]
        assert copy.saved_to_db is False

    def test_unknown_block(self):
        with pytest.raises(BlockNotFoundError):
            _session().move_block("missing", "up")

    @pytest.mark.asyncio
    async def test_delete_saved_block_closes_panels(self):
        persistence = MemoryPersistence([_saved("a", "A"), _saved("b", "B", 1)])
        session = _session(persistence)
        await session.load()
        session.toggle_metadata_panel("a")
        session.toggle_appearance_panel("a")

        await session.delete_block("a")
        assert [b.id for b in session.blocks] == ["b"]
        assert persistence.deleted == ["a"]
        assert session.open_metadata_panel_id is None
        assert session.open_appearance_panel_id is None


class TestEditing:
    """测试内容 / 外观 / 元数据编辑"""

    def test_update_content(self):
        session = _session()
        block = session.insert_block("paragraph-with-heading")
        updated = session.update_content(block.id, {"heading": "Intro", "html": "<p>Body</p>"})
        assert updated.content.heading == "Intro"
        assert session.get_block(block.id).content.html == "<p>Body</p>"

    def test_update_content_cannot_change_type(self):
        session = _session()
        block = session.insert_block("heading")
        with pytest.raises(BlockValidationError):
            session.update_content(block.id, {"block_type": "paragraph"})

    def test_update_content_invalid_value(self):
        session = _session()
        block = session.insert_block("numbered-list")
        with pytest.raises(BlockValidationError):
            session.update_content(block.id, {"start_number": 0})

    def test_update_appearance_partial_layout(self):
        session = _session()
        block = session.insert_block("heading")
        updated = session.update_appearance(block.id, {"style": "dark", "layout": {"padding_top": 20}})
        assert updated.style == "dark"
        assert updated.layout.padding_top == 20
        assert updated.layout.padding_bottom == 60

    def test_update_appearance_rejects_unknown(self):
        session = _session()
        block = session.insert_block("heading")
        with pytest.raises(BlockValidationError):
            session.update_appearance(block.id, {"content": {}})
        with pytest.raises(BlockValidationError):
            session.update_appearance(block.id, {"animation": "spin"})

    def test_edit_metadata(self):
        session = _session()
        block = session.insert_block("heading")
        updated = session.edit_metadata(block.id, {"learning_pattern": "Microlearning"})
        assert updated.metadata.learning_pattern == "microlearning"
        assert updated.metadata.field_sources.learning_pattern == "human"


class TestListOperations:
    """测试列表操作经由会话"""

    def test_indent_outdent(self):
        session = _session()
        block = session.insert_block("bullet-list")
        session.update_list_item(block.id, 0, "first")
        session.update_list_item(block.id, 1, "second")
        indented = session.indent_item(block.id, 1)
        assert indented.content.bullet_items[0].children[0].body == "second"

        outdented = session.outdent_item(block.id, 0, 0)
        assert [item.body for item in outdented.content.bullet_items] == ["first", "second", ""]

    def test_add_and_remove(self):
        session = _session()
        block = session.insert_block("numbered-list")
        session.add_list_item(block.id)
        session.add_child_item(block.id, 0)
        updated = session.update_list_item(block.id, 0, "child", child_index=0)
        assert len(updated.content.list_items) == 4
        assert updated.content.list_items[0].children[0].body == "child"

        updated = session.remove_child_item(block.id, 0, 0)
        assert updated.content.list_items[0].children is None
        updated = session.remove_list_item(block.id, 3)
        assert len(updated.content.list_items) == 3

    def test_non_list_block(self):
        session = _session()
        block = session.insert_block("heading")
        with pytest.raises(BlockValidationError):
            session.add_list_item(block.id)


class TestPanels:
    """测试面板开关"""

    def test_toggle(self):
        session = _session()
        a = session.insert_block("heading")
        b = session.insert_block("heading")
        assert session.toggle_metadata_panel(a.id) == a.id
        assert session.toggle_metadata_panel(b.id) == b.id
        assert session.toggle_metadata_panel(b.id) is None
        assert session.toggle_appearance_panel(a.id) == a.id


class TestSave:
    """测试保存"""

    @pytest.mark.asyncio
    async def test_save_marks_blocks_saved(self):
        persistence = MemoryPersistence()
        session = _session(persistence)
        block = session.insert_block("image-text")
        session.update_content(block.id, {"media_asset_id": "asset-1"})

        assert await session.save() == MSG_SAVED
        assert session.has_unsaved_changes is False
        assert session.get_block(block.id).saved_to_db is True
        params = persistence.upserts[0]
        assert params.id == block.id
        assert params.page_id == "page-1"
        assert params.media_type == "image"
        assert params.media_asset_id == "asset-1"
        assert params.content_json["blockType"] == "image-text"

    @pytest.mark.asyncio
    async def test_save_reconciles_new_ids(self):
        session = _session(MemoryPersistence(reassign_ids=True))
        block = session.insert_block("heading")
        session.toggle_metadata_panel(block.id)
        workflow = session.workflow(block.id)

        await session.save()
        new_id = session.blocks[0].id
        assert new_id == "db-1"
        assert session.open_metadata_panel_id == new_id
        assert session.workflow(new_id) is workflow

    @pytest.mark.asyncio
    async def test_save_failure(self):
        session = _session(MemoryPersistence(fail_upsert=True))
        block = session.insert_block("heading")
        with pytest.raises(PersistenceError):
            await session.save()
        assert session.get_block(block.id).saved_to_db is False
        assert session.has_unsaved_changes is True


    @pytest.mark.asyncio
    async def test_partial_failure_keeps_written_blocks_durable(self):
        persistence = MemoryPersistence(fail_on=2)
        session = _session(persistence)
        a = session.insert_block("heading")
        b = session.insert_block("heading")

        with pytest.raises(PersistenceError):
            await session.save()
        assert session.get_block(a.id).saved_to_db is True
        assert session.get_block(b.id).saved_to_db is False
        assert session.has_unsaved_changes is True

        await session.delete_block(a.id)
        assert persistence.deleted == [a.id]

    @pytest.mark.asyncio
    async def test_partial_failure_reconciles_written_ids(self):
        session = _session(MemoryPersistence(reassign_ids=True, fail_on=2))
        a = session.insert_block("heading")
        b = session.insert_block("heading")
        session.toggle_metadata_panel(a.id)

        with pytest.raises(PersistenceError):
            await session.save()
        assert [blk.id for blk in session.blocks] == ["db-1", b.id]
        assert session.open_metadata_panel_id == "db-1"


class TestMetadataWorkflow:
    """测试会话中的元数据工作流"""

    @pytest.mark.asyncio
    async def test_full_cycle(self):
        session = _session()
        block = session.insert_block("paragraph")
        session.update_content(block.id, {"html": "<p>Explain the water cycle.</p>"})
        await session.save()

        result = await session.generate_metadata(block.id)
        assert result.block.metadata.behaviour_tag == "instruction"
        assert session.get_block(block.id).metadata.difficulty == 2

        review = await session.run_sanity_check(block.id)
        assert list(review.fields) == ["difficulty"]

        result = await session.apply_corrections(block.id)
        assert result.notice == MSG_APPLIED
        assert session.get_block(block.id).metadata.difficulty == 4
        assert session.get_block(block.id).raw_ai_metadata == {"difficulty": 4}
        assert session.workflow(block.id).state == WorkflowState.IDLE

        await session.clear_metadata(block.id)
        assert session.get_block(block.id).metadata.difficulty is None
        assert session.persistence.cleared == [block.id]

    @pytest.mark.asyncio
    async def test_content_edit_during_generation_survives(self):
        service = ScriptedService()
        service.generate_gate = asyncio.Event()
        session = _session(service=service)
        block = session.insert_block("paragraph")
        session.update_content(block.id, {"html": "<p>Original</p>"})
        await session.save()

        task = asyncio.create_task(session.generate_metadata(block.id))
        await asyncio.sleep(0)
        session.update_content(block.id, {"html": "<p>Edited meanwhile</p>"})
        service.generate_gate.set()
        await task

        current = session.get_block(block.id)
        assert current.content.html == "<p>Edited meanwhile</p>"
        assert current.metadata.behaviour_tag == "instruction"


    @pytest.mark.asyncio
    async def test_human_edit_during_generation_survives(self):
        service = ScriptedService()
        service.generate_gate = asyncio.Event()
        session = _session(service=service)
        block = session.insert_block("paragraph")
        session.update_content(block.id, {"html": "<p>Original</p>"})
        await session.save()

        task = asyncio.create_task(session.generate_metadata(block.id))
        await asyncio.sleep(0)
        session.edit_metadata(block.id, {"learning_pattern": "microlearning"})
        service.generate_gate.set()
        await task

        metadata = session.get_block(block.id).metadata
        assert metadata.learning_pattern == "microlearning"
        assert metadata.field_sources.learning_pattern == "human"
        assert metadata.behaviour_tag == "instruction"
        assert metadata.field_sources.behaviour_tag == "ai"

    @pytest.mark.asyncio
    async def test_clear_during_generation_wins(self):
        service = ScriptedService()
        service.generate_gate = asyncio.Event()
        session = _session(service=service)
        block = session.insert_block("paragraph")
        session.update_content(block.id, {"html": "<p>Original</p>"})
        await session.save()

        task = asyncio.create_task(session.generate_metadata(block.id))
        await asyncio.sleep(0)
        await session.clear_metadata(block.id)
        service.generate_gate.set()
        result = await task

        assert result.stale is True
        current = session.get_block(block.id)
        assert current.metadata == BlockMetadata()
        assert current.raw_ai_metadata is None
        assert session.workflow(block.id).state == WorkflowState.IDLE
        assert session.persistence.cleared == [block.id, block.id]

    @pytest.mark.asyncio
    async def test_clear_during_sanity_check_closes_review(self):
        service = ScriptedService()
        session = _session(service=service)
        block = session.insert_block("paragraph")
        session.update_content(block.id, {"html": "<p>Original</p>"})
        await session.save()
        await session.generate_metadata(block.id)

        service.sanity_gate = asyncio.Event()
        task = asyncio.create_task(session.run_sanity_check(block.id))
        await asyncio.sleep(0)
        await session.clear_metadata(block.id)
        service.sanity_gate.set()

        with pytest.raises(WorkflowStateError):
            await task
        workflow = session.workflow(block.id)
        assert workflow.state == WorkflowState.IDLE
        assert workflow.review is None
        assert session.get_block(block.id).raw_ai_metadata is None

    @pytest.mark.asyncio
    async def test_id_reconciled_during_generation(self):
        service = ScriptedService()
        service.generate_gate = asyncio.Event()
        persistence = MemoryPersistence([_saved("legacy-a", "Breathing")], reassign_ids=True)
        session = _session(persistence, service)
        await session.load()

        task = asyncio.create_task(session.generate_metadata("legacy-a"))
        await asyncio.sleep(0)
        await session.save()
        assert [b.id for b in session.blocks] == ["db-1"]
        service.generate_gate.set()
        result = await task

        assert result.block.id == "db-1"
        assert session.get_block("db-1").metadata.behaviour_tag == "instruction"
        assert session.workflow("db-1").state == WorkflowState.GENERATED

    @pytest.mark.asyncio
    async def test_delete_during_generation(self):
        service = ScriptedService()
        service.generate_gate = asyncio.Event()
        persistence = MemoryPersistence([_saved("a", "A"), _saved("b", "B", 1)])
        session = _session(persistence, service)
        await session.load()

        task = asyncio.create_task(session.generate_metadata("a"))
        await asyncio.sleep(0)
        await session.delete_block("a")
        service.generate_gate.set()
        await task

        assert [b.id for b in session.blocks] == ["b"]
        assert session.get_block("b").metadata == BlockMetadata()


class TestSearch:
    """测试搜索"""

    @pytest.mark.asyncio
    async def test_search_matches_text(self):
        session = _session()
        a = session.insert_block("paragraph")
        session.update_content(a.id, {"html": "<p>Photosynthesis basics</p>"})
        session.insert_block("heading")

        outcome = await session.search("photo")
        assert outcome.superseded is False
        assert outcome.value == [a.id]

    @pytest.mark.asyncio
    async def test_blank_query(self):
        outcome = await _session().search("   ")
        assert outcome.value == []

    @pytest.mark.asyncio
    async def test_superseded_search(self):
        session = LessonEditorSession(
            "page-1", MemoryPersistence(), ScriptedService(), MemoryLog(), debounce_ms=20
        )
        session.insert_block("paragraph")
        first, second = await asyncio.gather(session.search("a"), session.search("b"))
        assert first.superseded is True
        assert second.superseded is False


class TestSessionRegistry:
    """测试会话注册表"""

    @pytest.mark.asyncio
    async def test_one_session_per_page(self):
        created = []

        def factory(page_id):
            session = _session(MemoryPersistence([_saved("a", "A")]))
            created.append(page_id)
            return session

        registry = SessionRegistry(factory, sessions={})
        first = await registry.get_or_load("page-1")
        second = await registry.get_or_load("page-1")
        assert first is second
        assert created == ["page-1"]
        assert [b.id for b in first.blocks] == ["a"]

        registry.drop("page-1")
        assert registry.get("page-1") is None

    @pytest.mark.asyncio
    async def test_failed_load_not_cached(self):
        class BrokenPersistence(MemoryPersistence):
            async def load_blocks(self, page_id):
                raise PersistenceError("Failed to load lesson blocks.")

        registry = SessionRegistry(lambda page_id: _session(BrokenPersistence()), sessions={})
        with pytest.raises(PersistenceError):
            await registry.get_or_load("page-1")
        assert registry.get("page-1") is None

    @pytest.mark.asyncio
    async def test_session_registered_after_load(self):
        gate = asyncio.Event()

        class SlowPersistence(MemoryPersistence):
            async def load_blocks(self, page_id):
                await gate.wait()
                return [_saved("a", "A")]

        def factory(page_id):
            return _session(SlowPersistence())

        registry = SessionRegistry(factory, sessions={})
        first = asyncio.create_task(registry.get_or_load("page-1"))
        second = asyncio.create_task(registry.get_or_load("page-1"))
        await asyncio.sleep(0)
        assert registry.get("page-1") is None

        gate.set()
        sessions = await asyncio.gather(first, second)
        assert sessions[0] is sessions[1]
        assert registry.get("page-1") is sessions[0]
        assert [b.id for b in sessions[0].blocks] == ["a"]
