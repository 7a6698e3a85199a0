import pytest
from sqlalchemy.exc import OperationalError
from sqlmodel import select

from codearena import schemas
from codearena.models import TestCase as TestCaseRow
from codearena.services import testcases as testcase_service
from codearena.storage import ContentStoreError, MemoryContentStore, problem_prefix

pytestmark = pytest.mark.anyio


class FlakyStore(MemoryContentStore):
    """Memory store whose ``fail_on``-th write (1-based) raises; other writes succeed."""

    def __init__(self, fail_on: int):
        super().__init__()
        self.fail_on = fail_on
        self.writes = 0

    def put_text(self, key, content):
        self.writes += 1
        if self.writes == self.fail_on:
            raise ContentStoreError(f"write failed for {key}")
        super().put_text(key, content)


async def _problem(client, headers, **overrides):
    payload = {
        "title": "Two Sum",
        "description": "Add them up.",
        "difficulty": "EASY",
        "time_limit_ms": 1000,
        "memory_limit_mb": 256,
        "tags": [],
        "is_public": True,
    }
    payload.update(overrides)
    r = await client.post("/api/problems", json=payload, headers=headers)
    assert r.status_code == 201
    return r.json()["data"]["id"]


def tc(name, **overrides):
    body = {"name": name, "input_content": "1 2\n", "output_content": "3\n"}
    body.update(overrides)
    return body


async def test_hidden_test_case_visibility(client, make_user):
    _, setter = make_user("setter-1", "PROBLEM_SETTER")
    _, user = make_user("user-1")
    _, tester = make_user("tester-1", "TESTER")
    pid = await _problem(client, setter)

    r = await client.post(f"/api/testcases/problems/{pid}", json=tc("tc1", is_hidden=True), headers=setter)
    assert r.status_code == 201
    hidden = r.json()["data"]
    assert hidden["input_content"] == "1 2\n"
    assert hidden["file_size"] == 6
    await client.post(f"/api/testcases/problems/{pid}", json=tc("tc2"), headers=setter)

    r = await client.get(f"/api/testcases/problems/{pid}", headers=user)
    names = [t["name"] for t in r.json()["data"]]
    assert names == ["tc2"]
    assert r.json()["data"][0]["input_content"] is None

    r = await client.get(f"/api/testcases/problems/{pid}", headers=tester)
    assert [t["name"] for t in r.json()["data"]] == ["tc1", "tc2"]

    r = await client.get(f"/api/testcases/{hidden['id']}", headers=user)
    assert r.status_code == 404
    r = await client.get(f"/api/testcases/{hidden['id']}", headers=tester)
    assert r.status_code == 200
    assert r.json()["data"]["output_content"] == "3\n"


async def test_samples_are_public(client, make_user):
    _, setter = make_user("setter-1", "PROBLEM_SETTER")
    pid = await _problem(client, setter, is_public=False)
    await client.post(f"/api/testcases/problems/{pid}", json=tc("sample", is_sample=True, is_hidden=True), headers=setter)
    await client.post(f"/api/testcases/problems/{pid}", json=tc("secret", is_hidden=True), headers=setter)

    r = await client.get(f"/api/testcases/problems/{pid}/samples")
    assert r.status_code == 200
    data = r.json()["data"]
    assert [t["name"] for t in data] == ["sample"]
    assert data[0]["input_content"] == "1 2\n"

    r = await client.get("/api/testcases/problems/999/samples")
    assert r.status_code == 404


async def test_user_cannot_create_test_cases(client, make_user):
    _, setter = make_user("setter-1", "PROBLEM_SETTER")
    _, user = make_user("user-1")
    _, other = make_user("setter-2", "PROBLEM_SETTER")
    pid = await _problem(client, setter)

    r = await client.post(f"/api/testcases/problems/{pid}", json=tc("tc1"), headers=user)
    assert r.status_code == 403
    r = await client.post(f"/api/testcases/problems/{pid}", json=tc("tc1"), headers=other)
    assert r.status_code == 403

    private_pid = await _problem(client, setter, title="Hidden", is_public=False)
    r = await client.post(f"/api/testcases/problems/{private_pid}", json=tc("tc1"), headers=other)
    assert r.status_code == 404


async def test_tester_can_author_test_cases(client, make_user):
    _, setter = make_user("setter-1", "PROBLEM_SETTER")
    _, tester = make_user("tester-1", "TESTER")
    pid = await _problem(client, setter, is_public=False)
    r = await client.post(f"/api/testcases/problems/{pid}", json=tc("tc1"), headers=tester)
    assert r.status_code == 201
    assert r.json()["data"]["created_by"] == "tester-1"


async def test_update_optional_content_recomputes_size(client, make_user, store):
    _, setter = make_user("setter-1", "PROBLEM_SETTER")
    pid = await _problem(client, setter)
    r = await client.post(f"/api/testcases/problems/{pid}", json=tc("tc1"), headers=setter)
    tid = r.json()["data"]["id"]

    update = {"name": "tc1-renamed", "is_hidden": True, "is_sample": False, "output_content": "three\n"}
    r = await client.put(f"/api/testcases/{tid}", json=update, headers=setter)
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["name"] == "tc1-renamed"
    assert data["is_hidden"] is True
    assert data["input_content"] == "1 2\n"
    assert data["output_content"] == "three\n"
    assert data["file_size"] == 4 + 6
    assert store.get_text(f"testcases/{pid}/{tid}/input.txt") == "1 2\n"


async def test_update_name_conflict(client, make_user):
    _, setter = make_user("setter-1", "PROBLEM_SETTER")
    pid = await _problem(client, setter)
    await client.post(f"/api/testcases/problems/{pid}", json=tc("tc1"), headers=setter)
    r = await client.post(f"/api/testcases/problems/{pid}", json=tc("tc2"), headers=setter)
    tid = r.json()["data"]["id"]

    r = await client.put(
        f"/api/testcases/{tid}",
        json={"name": "tc1", "is_hidden": False, "is_sample": False},
        headers=setter,
    )
    assert r.status_code == 409


async def test_delete_removes_blobs(client, make_user, store):
    _, setter = make_user("setter-1", "PROBLEM_SETTER")
    _, user = make_user("user-1")
    pid = await _problem(client, setter)
    r = await client.post(f"/api/testcases/problems/{pid}", json=tc("tc1"), headers=setter)
    tid = r.json()["data"]["id"]

    r = await client.delete(f"/api/testcases/{tid}", headers=user)
    assert r.status_code == 403

    r = await client.delete(f"/api/testcases/{tid}", headers=setter)
    assert r.status_code == 200
    assert store.keys(problem_prefix(pid)) == []
    r = await client.get(f"/api/testcases/{tid}", headers=setter)
    assert r.status_code == 404


async def test_bulk_create_and_conflicts(client, make_user, session):
    _, setter = make_user("setter-1", "PROBLEM_SETTER")
    pid = await _problem(client, setter)

    r = await client.post(
        f"/api/testcases/problems/{pid}/bulk",
        json={"test_cases": [tc("a"), tc("b"), tc("c", is_sample=True)]},
        headers=setter,
    )
    assert r.status_code == 201
    assert [t["name"] for t in r.json()["data"]] == ["a", "b", "c"]

    r = await client.post(
        f"/api/testcases/problems/{pid}/bulk",
        json={"test_cases": [tc("d"), tc("d")]},
        headers=setter,
    )
    assert r.status_code == 409

    r = await client.post(f"/api/testcases/problems/{pid}/bulk", json={"test_cases": [tc("a")]}, headers=setter)
    assert r.status_code == 409

    r = await client.post(f"/api/testcases/problems/{pid}/bulk", json={"test_cases": []}, headers=setter)
    assert r.status_code == 400

    count = len(session.exec(select(TestCaseRow).where(TestCaseRow.problem_id == pid)).all())
    assert count == 3


async def test_store_failure_compensates(client, app, make_user, session):
    _, setter = make_user("setter-1", "PROBLEM_SETTER")
    pid = await _problem(client, setter)

    from codearena.storage import get_content_store

    flaky = FlakyStore(fail_on=4)
    app.dependency_overrides[get_content_store] = lambda: flaky

    r = await client.post(
        f"/api/testcases/problems/{pid}/bulk",
        json={"test_cases": [tc("a"), tc("b")]},
        headers=setter,
    )
    assert r.status_code == 502
    assert r.json()["error"] == "UPSTREAM_ERROR"
    assert flaky.keys() == []
    assert session.exec(select(TestCaseRow).where(TestCaseRow.problem_id == pid)).all() == []


async def test_update_failure_restores_content(client, app, make_user, store):
    _, setter = make_user("setter-1", "PROBLEM_SETTER")
    pid = await _problem(client, setter)
    r = await client.post(f"/api/testcases/problems/{pid}", json=tc("tc1"), headers=setter)
    tid = r.json()["data"]["id"]

    from codearena.storage import get_content_store

    flaky = FlakyStore(fail_on=2)
    for key in store.keys():
        MemoryContentStore.put_text(flaky, key, store.get_text(key))
    app.dependency_overrides[get_content_store] = lambda: flaky

    update = {"name": "renamed", "is_hidden": False, "is_sample": False,
              "input_content": "9 9\n", "output_content": "18\n"}
    r = await client.put(f"/api/testcases/{tid}", json=update, headers=setter)
    assert r.status_code == 502
    assert flaky.get_text(f"testcases/{pid}/{tid}/input.txt") == "1 2\n"
    assert flaky.get_text(f"testcases/{pid}/{tid}/output.txt") == "3\n"

    app.dependency_overrides[get_content_store] = lambda: store
    r = await client.get(f"/api/testcases/{tid}", headers=setter)
    assert r.json()["data"]["name"] == "tc1"


async def test_update_commit_failure_restores_content(client, make_user, session, store, monkeypatch):
    setter, headers = make_user("setter-1", "PROBLEM_SETTER")
    pid = await _problem(client, headers)
    r = await client.post(f"/api/testcases/problems/{pid}", json=tc("tc1"), headers=headers)
    tid = r.json()["data"]["id"]

    def broken_commit():
        raise OperationalError("COMMIT", {}, Exception("database is locked"))

    monkeypatch.setattr(session, "commit", broken_commit)
    update = schemas.TestCaseUpdate(name="tc1", is_hidden=True, is_sample=False,
                                    input_content="9 9\n", output_content="18\n")
    with pytest.raises(OperationalError):
        testcase_service.update_test_case(session, store, tid, update, setter)

    assert store.get_text(f"testcases/{pid}/{tid}/input.txt") == "1 2\n"
    assert store.get_text(f"testcases/{pid}/{tid}/output.txt") == "3\n"
