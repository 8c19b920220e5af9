# backend/tests/test_lessons_api.py
# 功能: 课时编辑 API 与元数据工作流 API 的端到端测试
# 覆盖: 页面创建/读取、块增删改移、列表操作、保存、搜索、面板、元数据生成/复核/应用/清除、错误码映射

"""
API 测试
运行: python -m pytest tests/test_lessons_api.py -v

数据库用内存 SQLite，AI 服务用替身，通过 dependency_overrides 注入。
"""

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from api.lessons import get_registry
from core.database import Base, get_db
from core.editor_session import LessonEditorSession, SessionRegistry
from core.metadata_review import MSG_APPLIED, MSG_SAVE_FIRST
from core.models import ContentModuleBlock
from core.persistence import SqlPersistenceAdapter, SqlSuggestionLog
from main import app


class FakeService:
    """AI 服务替身；fail=True 时模拟网络错误"""

    def __init__(self):
        self.fail = False

    async def generate_metadata(self, payload):
        if self.fail:
            raise ConnectionError("AI service unreachable")
        return {"metadata": {"cognitive_skill": "Apply", "difficulty": 5, "source": "ai"}}

    async def sanity_check(self, payload):
        return {"suggestions": [
            {"field_name": "difficulty", "original_value": "5", "suggested_value": "3",
             "reason": "Short recall task.", "confidence": 0.7},
            {"field_name": "cognitive_skill", "original_value": "Apply", "suggested_value": "Remember",
             "reason": "Asks for recall only.", "confidence": 0.6},
        ]}

    async def apply_corrections(self, payload):
        return {"updated": {"difficulty": 3}}


@pytest.fixture
def env():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    service = FakeService()

    def override_get_db():
        db = SessionLocal()
        try:
            yield db
        finally:
            db.close()

    def factory(page_id):
        log = SqlSuggestionLog(SessionLocal)
        return LessonEditorSession(
            page_id,
            persistence=SqlPersistenceAdapter(SessionLocal),
            service=service,
            suggestion_log=log,
            debounce_ms=0,
        )

    registry = SessionRegistry(factory, sessions={})
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_registry] = lambda: registry

    yield {"client": TestClient(app), "db": SessionLocal, "service": service}

    app.dependency_overrides.clear()
    engine.dispose()


@pytest.fixture
def client(env):
    return env["client"]


@pytest.fixture
def page_id(client):
    response = client.post("/api/lessons/", json={"title": "Water cycle"})
    assert response.status_code == 201
    return response.json()["id"]


def _insert(client, page_id, block_type, index=None):
    response = client.post(
        f"/api/lessons/{page_id}/blocks",
        json={"block_type": block_type, "index": index},
    )
    assert response.status_code == 201
    return response.json()["block"]


def _ids(response):
    return [block["id"] for block in response.json()["blocks"]]


class TestPages:
    """测试页面"""

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_create_and_get(self, client, page_id):
        response = client.get(f"/api/lessons/{page_id}")
        assert response.status_code == 200
        data = response.json()
        assert data["page"]["title"] == "Water cycle"
        assert data["blocks"] == []
        assert data["has_unsaved_changes"] is False

    def test_unknown_page(self, client):
        assert client.get("/api/lessons/missing").status_code == 404


class TestBlocks:
    """测试内容块操作"""

    def test_insert_and_list(self, client, page_id):
        heading = _insert(client, page_id, "heading")
        paragraph = _insert(client, page_id, "paragraph", index=0)
        assert heading["type"] == "heading"
        assert heading["saved_to_db"] is False

        response = client.get(f"/api/lessons/{page_id}/blocks")
        assert [b["id"] for b in response.json()] == [paragraph["id"], heading["id"]]
        assert [b["order_index"] for b in response.json()] == [0, 1]

    def test_insert_menu_position(self, client, page_id):
        first = _insert(client, page_id, "heading")
        client.post(f"/api/lessons/{page_id}/insert-menu", json={"index": 0})
        inserted = _insert(client, page_id, "subheading")
        response = client.get(f"/api/lessons/{page_id}/blocks")
        assert [b["id"] for b in response.json()] == [inserted["id"], first["id"]]

    def test_insert_invalid_type(self, client, page_id):
        response = client.post(f"/api/lessons/{page_id}/blocks", json={"block_type": "video"})
        assert response.status_code == 400

    def test_update_content_and_appearance(self, client, page_id):
        block = _insert(client, page_id, "heading")
        response = client.put(
            f"/api/lessons/{page_id}/blocks/{block['id']}/content",
            json={"changes": {"heading": "The water cycle"}},
        )
        assert response.status_code == 200
        assert response.json()["content"]["heading"] == "The water cycle"

        response = client.put(
            f"/api/lessons/{page_id}/blocks/{block['id']}/appearance",
            json={"changes": {"style": "themeTint", "animation": "fade-in"}},
        )
        assert response.json()["style"] == "themeTint"
        assert response.json()["animation"] == "fade-in"

    def test_move_duplicate_delete(self, client, page_id):
        a = _insert(client, page_id, "heading")
        b = _insert(client, page_id, "paragraph")

        response = client.post(f"/api/lessons/{page_id}/blocks/{b['id']}/move", json={"direction": "up"})
        assert _ids(response) == [b["id"], a["id"]]

        response = client.post(f"/api/lessons/{page_id}/blocks/{b['id']}/duplicate")
        assert response.status_code == 201
        copy_id = response.json()["block"]["id"]
        assert _ids(response) == [b["id"], copy_id, a["id"]]

        response = client.delete(f"/api/lessons/{page_id}/blocks/{b['id']}")
        assert _ids(response) == [copy_id, a["id"]]

    def test_move_invalid_direction(self, client, page_id):
        block = _insert(client, page_id, "heading")
        response = client.post(f"/api/lessons/{page_id}/blocks/{block['id']}/move", json={"direction": "left"})
        assert response.status_code == 400

    def test_unknown_block(self, client, page_id):
        response = client.put(
            f"/api/lessons/{page_id}/blocks/missing/content",
            json={"changes": {"heading": "x"}},
        )
        assert response.status_code == 404

    def test_human_metadata_edit(self, client, page_id):
        block = _insert(client, page_id, "heading")
        url = f"/api/lessons/{page_id}/blocks/{block['id']}/metadata"
        response = client.put(url, json={"changes": {"behaviour_tag": "Reflection", "difficulty": 6}})
        assert response.status_code == 200
        metadata = response.json()["metadata"]
        assert metadata["behaviour_tag"] == "reflection"
        assert metadata["field_sources"]["difficulty"] == "human"

        response = client.put(url, json={"changes": {"difficulty": 12}})
        assert response.status_code == 400


class TestListItems:
    """测试列表项操作"""

    def test_indent_and_remove(self, client, page_id):
        block = _insert(client, page_id, "numbered-list")
        base = f"/api/lessons/{page_id}/blocks/{block['id']}/list"

        client.put(f"{base}/items", json={"index": 1, "body": "Evaporation"})
        response = client.post(f"{base}/indent", json={"index": 1})
        items = response.json()["content"]["list_items"]
        assert len(items) == 2
        assert items[0]["children"][0]["body"] == "Evaporation"

        response = client.post(f"{base}/outdent", json={"index": 0, "child_index": 0})
        assert [item["body"] for item in response.json()["content"]["list_items"]] == ["", "Evaporation", ""]

        response = client.post(f"{base}/items")
        assert len(response.json()["content"]["list_items"]) == 4

        response = client.post(f"{base}/remove", json={"index": 0})
        assert len(response.json()["content"]["list_items"]) == 3

    def test_outdent_requires_child_index(self, client, page_id):
        block = _insert(client, page_id, "bullet-list")
        response = client.post(
            f"/api/lessons/{page_id}/blocks/{block['id']}/list/outdent", json={"index": 0}
        )
        assert response.status_code == 400

    def test_not_a_list(self, client, page_id):
        block = _insert(client, page_id, "heading")
        response = client.post(f"/api/lessons/{page_id}/blocks/{block['id']}/list/items")
        assert response.status_code == 400


class TestSaveAndSearch:
    """测试保存与搜索"""

    def test_save_persists_blocks(self, env, client, page_id):
        block = _insert(client, page_id, "heading")
        client.put(
            f"/api/lessons/{page_id}/blocks/{block['id']}/content",
            json={"changes": {"heading": "Saved heading"}},
        )
        response = client.post(f"/api/lessons/{page_id}/save")
        assert response.status_code == 200
        assert response.json()["message"] == "Lesson saved successfully!"
        assert response.json()["has_unsaved_changes"] is False

        db = env["db"]()
        row = db.get(ContentModuleBlock, block["id"])
        assert row.type == "text"
        assert row.content_json["content"] == "Saved heading"
        db.close()

    def test_reload_restores_saved_state(self, client, page_id):
        block = _insert(client, page_id, "heading")
        client.post(f"/api/lessons/{page_id}/save")
        _insert(client, page_id, "paragraph")

        response = client.post(f"/api/lessons/{page_id}/reload")
        assert _ids(response) == [block["id"]]
        assert response.json()["blocks"][0]["saved_to_db"] is True

    def test_delete_saved_block(self, env, client, page_id):
        block = _insert(client, page_id, "heading")
        client.post(f"/api/lessons/{page_id}/save")
        response = client.delete(f"/api/lessons/{page_id}/blocks/{block['id']}")
        assert response.status_code == 200

        db = env["db"]()
        assert db.get(ContentModuleBlock, block["id"]) is None
        db.close()

    def test_search(self, client, page_id):
        block = _insert(client, page_id, "paragraph")
        client.put(
            f"/api/lessons/{page_id}/blocks/{block['id']}/content",
            json={"changes": {"html": "<p>Condensation forms clouds</p>"}},
        )
        _insert(client, page_id, "heading")
        response = client.post(f"/api/lessons/{page_id}/search", json={"query": "clouds"})
        assert response.json() == {"query": "clouds", "superseded": False, "block_ids": [block["id"]]}

    def test_panels(self, client, page_id):
        block = _insert(client, page_id, "heading")
        url = f"/api/lessons/{page_id}/blocks/{block['id']}/panels/metadata"
        assert client.post(url).json() == {"open_metadata_panel_id": block["id"]}
        assert client.post(url).json() == {"open_metadata_panel_id": None}


class TestMetadataWorkflowAPI:
    """测试元数据工作流 API"""

    def _saved_paragraph(self, client, page_id):
        block = _insert(client, page_id, "paragraph")
        client.put(
            f"/api/lessons/{page_id}/blocks/{block['id']}/content",
            json={"changes": {"html": "<p>Name the stages of the water cycle.</p>"}},
        )
        client.post(f"/api/lessons/{page_id}/save")
        return f"/api/lessons/{page_id}/blocks/{block['id']}/metadata"

    def test_generate_requires_save(self, client, page_id):
        block = _insert(client, page_id, "paragraph")
        response = client.post(f"/api/lessons/{page_id}/blocks/{block['id']}/metadata/generate")
        assert response.status_code == 400
        assert response.json()["detail"] == MSG_SAVE_FIRST

    def test_full_review_cycle(self, client, page_id):
        url = self._saved_paragraph(client, page_id)

        response = client.post(f"{url}/generate")
        assert response.status_code == 200
        data = response.json()
        assert data["state"] == "generated"
        assert data["block"]["metadata"]["cognitive_skill"] == "apply"
        assert data["block"]["metadata"]["difficulty"] == 5

        response = client.post(f"{url}/sanity-check")
        assert response.json()["state"] == "reviewing"
        fields = response.json()["review"]["fields"]
        assert fields["difficulty"]["decision"] == "accept"

        response = client.post(f"{url}/decision", json={"field_name": "cognitive_skill", "decision": "ignore"})
        assert response.json()["review"]["fields"]["cognitive_skill"]["decision"] == "ignore"

        response = client.post(f"{url}/apply-corrections")
        data = response.json()
        assert data["notice"] == MSG_APPLIED
        assert data["state"] == "idle"
        assert data["block"]["metadata"]["difficulty"] == 3
        assert data["block"]["metadata"]["cognitive_skill"] == "apply"

        response = client.get(f"{url}/state")
        assert response.json() == {"state": "idle", "review": None}

    def test_decision_without_review_conflicts(self, client, page_id):
        url = self._saved_paragraph(client, page_id)
        response = client.post(f"{url}/decision", json={"field_name": "difficulty", "decision": "ignore"})
        assert response.status_code == 409

    def test_transport_failure(self, env, client, page_id):
        url = self._saved_paragraph(client, page_id)
        env["service"].fail = True
        response = client.post(f"{url}/generate")
        assert response.status_code == 502
        assert client.get(f"{url}/state").json()["state"] == "idle"

    def test_dismiss_and_clear(self, client, page_id):
        url = self._saved_paragraph(client, page_id)
        client.post(f"{url}/generate")
        client.post(f"{url}/sanity-check")

        response = client.post(f"{url}/dismiss")
        assert response.json() == {"state": "idle", "review": None}

        response = client.post(f"{url}/clear")
        assert response.status_code == 200
        metadata = response.json()["block"]["metadata"]
        assert metadata["cognitive_skill"] is None
        assert metadata["difficulty"] is None
        assert response.json()["block"]["raw_ai_metadata"] is None
