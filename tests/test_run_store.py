"""
Tests for the run store backends. The Supabase backend is driven through a
recording fake of the query builder.
"""

from datetime import datetime, timezone
from types import SimpleNamespace

import pytest

from nodeflow.db.run_store import InMemoryRunStore, RunNotFoundError, SupabaseRunStore
from nodeflow.models.workflow import NodeExecution, WorkflowGraph, WorkflowRecord, WorkflowRun

from conftest import TEST_USER_ID, edge, node, save_workflow


class FakeQuery:
    def __init__(self, client, table: str):
        self.client = client
        self.table = table
        self.ops: list[tuple] = []

    def __getattr__(self, name):
        def record(*args, **kwargs):
            self.ops.append((name, args, kwargs))
            return self
        return record

    def execute(self):
        self.client.executed.append((self.table, self.ops))
        return SimpleNamespace(data=self.client.rows.get(self.table, []))


class FakeSupabase:
    def __init__(self, rows: dict[str, list[dict]] | None = None):
        self.rows = rows or {}
        self.executed: list[tuple[str, list[tuple]]] = []

    def table(self, name: str) -> FakeQuery:
        return FakeQuery(self, name)


class TestInMemoryRunStore:
    def test_graph_is_copied_on_read(self, store):
        save_workflow(store, "wf-1", [node("T", "text", content="Hi")], [])

        graph = store.fetch_workflow_graph("wf-1")
        graph.nodes[0].config["content"] = "changed"

        assert store.fetch_workflow_graph("wf-1").nodes[0].config["content"] == "Hi"

    def test_unknown_workflow_graph_is_empty(self, store):
        graph = store.fetch_workflow_graph("missing")

        assert graph.nodes == []
        assert graph.edges == []

    def test_update_unknown_run_raises(self, store):
        with pytest.raises(RunNotFoundError):
            store.update_run("missing", {"status": "RUNNING"})

    def test_update_unknown_execution_raises(self, store):
        with pytest.raises(LookupError):
            store.update_node_execution("missing", {"status": "RUNNING"})

    def test_list_runs_newest_first_with_limit(self, store):
        older = WorkflowRun(workflow_id="wf-1", created_at=datetime(2024, 1, 1, tzinfo=timezone.utc))
        newer = WorkflowRun(workflow_id="wf-1", created_at=datetime(2024, 6, 1, tzinfo=timezone.utc))
        other = WorkflowRun(workflow_id="wf-2")
        for run in (older, newer, other):
            store.create_run(run)

        assert [r.id for r in store.list_runs("wf-1")] == [newer.id, older.id]
        assert [r.id for r in store.list_runs("wf-1", limit=1)] == [newer.id]

    def test_executions_are_scoped_to_their_run(self, store):
        store.create_node_executions(
            [NodeExecution(run_id="r1", node_id="A"), NodeExecution(run_id="r2", node_id="A")]
        )

        assert [e.run_id for e in store.list_node_executions("r1")] == ["r1"]


    def test_update_workflow_renames_and_replaces_graph(self, store):
        save_workflow(store, "wf-1", [node("T", "text")], [])
        before = store.fetch_workflow("wf-1").updated_at

        updated = store.update_workflow(
            "wf-1",
            graph=WorkflowGraph(nodes=[node("A", "text"), node("B", "llm")], edges=[edge("A", "B")]),
            name="Renamed",
        )

        assert updated.name == "Renamed"
        assert updated.updated_at >= before
        assert [n.id for n in store.fetch_workflow_graph("wf-1").nodes] == ["A", "B"]

    def test_update_workflow_without_graph_keeps_nodes(self, store):
        save_workflow(store, "wf-1", [node("T", "text")], [])

        store.update_workflow("wf-1", name="Renamed")

        assert [n.id for n in store.fetch_workflow_graph("wf-1").nodes] == ["T"]

    def test_update_unknown_workflow_raises(self, store):
        with pytest.raises(LookupError):
            store.update_workflow("missing", name="x")

    def test_list_workflows_is_owner_scoped(self, store):
        older = WorkflowRecord(user_id=TEST_USER_ID, updated_at=datetime(2024, 1, 1, tzinfo=timezone.utc))
        newer = WorkflowRecord(user_id=TEST_USER_ID, updated_at=datetime(2024, 6, 1, tzinfo=timezone.utc))
        other = WorkflowRecord(user_id="someone-else")
        for workflow in (older, newer, other):
            store.create_workflow(workflow, WorkflowGraph())

        assert [w.id for w in store.list_workflows(TEST_USER_ID)] == [newer.id, older.id]


class TestSupabaseRunStore:
    def test_fetch_workflow_maps_row(self):
        client = FakeSupabase({"workflows": [{"id": "wf-1", "name": None, "user_id": TEST_USER_ID}]})

        workflow = SupabaseRunStore(client).fetch_workflow("wf-1")

        assert workflow.id == "wf-1"
        assert workflow.name == "Untitled Workflow"
        assert workflow.user_id == TEST_USER_ID
        table, ops = client.executed[0]
        assert table == "workflows"
        assert ("eq", ("id", "wf-1"), {}) in ops

    def test_fetch_missing_workflow(self):
        assert SupabaseRunStore(FakeSupabase()).fetch_workflow("wf-1") is None

    def test_fetch_workflow_graph(self):
        client = FakeSupabase(
            {
                "workflow_nodes": [
                    {"id": "T", "type": "text", "config": {"content": "Hi"}, "position_x": 10, "position_y": 20},
                    {"id": "L", "type": "llm", "config": None},
                ],
                "workflow_edges": [
                    {"id": "e1", "source_id": "T", "target_id": "L", "target_handle": "userPrompt"},
                ],
            }
        )

        graph = SupabaseRunStore(client).fetch_workflow_graph("wf-1")

        assert [(n.id, n.type) for n in graph.nodes] == [("T", "text"), ("L", "llm")]
        assert graph.nodes[1].config == {}
        assert graph.edges[0].target_handle == "userPrompt"
        assert graph.edges[0].source_handle is None

    def test_updates_are_json_safe(self):
        client = FakeSupabase()
        when = datetime(2024, 1, 1, tzinfo=timezone.utc)

        SupabaseRunStore(client).update_node_execution(
            "exec-1",
            {"status": "COMPLETED", "completed_at": when, "outputs": {"at": when}},
        )

        table, ops = client.executed[0]
        assert table == "node_executions"
        name, args, _ = ops[0]
        assert name == "update"
        assert args[0] == {
            "status": "COMPLETED",
            "completed_at": when.isoformat(),
            "outputs": {"at": str(when)},
        }
        assert ("eq", ("id", "exec-1"), {}) in ops

    def test_create_run_and_executions(self):
        client = FakeSupabase()
        store = SupabaseRunStore(client)
        run = WorkflowRun(workflow_id="wf-1", user_id=TEST_USER_ID)

        store.create_run(run)
        store.create_node_executions([NodeExecution(run_id=run.id, node_id="T")])
        store.create_node_executions([])

        assert [table for table, _ in client.executed] == ["workflow_runs", "node_executions"]
        inserted = client.executed[0][1][0][1][0]
        assert inserted["id"] == run.id
        assert inserted["status"] == "PENDING"

    def test_list_runs_orders_newest_first(self):
        client = FakeSupabase({"workflow_runs": [{"id": "r1", "workflow_id": "wf-1", "status": "COMPLETED"}]})

        runs = SupabaseRunStore(client).list_runs("wf-1", limit=5)

        assert [r.id for r in runs] == ["r1"]
        _, ops = client.executed[0]
        assert ("order", ("created_at",), {"desc": True}) in ops
        assert ("limit", (5,), {}) in ops

    def test_fetch_workflow_parses_timestamps(self):
        client = FakeSupabase(
            {
                "workflows": [
                    {
                        "id": "wf-1",
                        "name": "Kit",
                        "description": "demo",
                        "user_id": TEST_USER_ID,
                        "created_at": "2024-01-01T00:00:00+00:00",
                        "updated_at": "2024-02-01T00:00:00+00:00",
                    }
                ]
            }
        )

        workflow = SupabaseRunStore(client).fetch_workflow("wf-1")

        assert workflow.description == "demo"
        assert workflow.updated_at == datetime(2024, 2, 1, tzinfo=timezone.utc)

    def test_create_workflow_inserts_graph_rows(self):
        client = FakeSupabase({"workflows": [{"id": "wf-1", "name": "Kit", "user_id": TEST_USER_ID}]})
        record = WorkflowRecord(id="wf-1", name="Kit", user_id=TEST_USER_ID)
        graph = WorkflowGraph(
            nodes=[node("T", "text", content="Hi"), node("L", "llm")],
            edges=[edge("T", "L", "user_message", edge_id="e1")],
        )

        created = SupabaseRunStore(client).create_workflow(record, graph)

        assert created.id == "wf-1"
        assert [table for table, _ in client.executed] == ["workflows", "workflow_nodes", "workflow_edges"]
        node_rows = client.executed[1][1][0][1][0]
        assert node_rows[0] == {
            "id": "T",
            "workflow_id": "wf-1",
            "type": "text",
            "config": {"content": "Hi"},
            "position_x": 0,
            "position_y": 0,
        }
        edge_rows = client.executed[2][1][0][1][0]
        assert edge_rows[0]["target_handle"] == "user_message"
        assert edge_rows[0]["workflow_id"] == "wf-1"

    def test_create_workflow_rolls_back_when_graph_insert_fails(self):
        class FailingNodesSupabase(FakeSupabase):
            def table(self, name):
                if name == "workflow_nodes":
                    raise RuntimeError("insert rejected")
                return super().table(name)

        client = FailingNodesSupabase({"workflows": [{"id": "wf-1", "user_id": TEST_USER_ID}]})
        record = WorkflowRecord(id="wf-1", user_id=TEST_USER_ID)

        with pytest.raises(RuntimeError):
            SupabaseRunStore(client).create_workflow(record, WorkflowGraph(nodes=[node("T", "text")]))

        table, ops = client.executed[-1]
        assert table == "workflows"
        assert ops[0][0] == "delete"
        assert ("eq", ("id", "wf-1"), {}) in ops

    def test_update_workflow_replaces_graph_rows(self):
        client = FakeSupabase({"workflows": [{"id": "wf-1", "name": "Renamed", "user_id": TEST_USER_ID}]})

        updated = SupabaseRunStore(client).update_workflow(
            "wf-1", graph=WorkflowGraph(nodes=[node("A", "text")]), name="Renamed"
        )

        assert updated.name == "Renamed"
        assert [table for table, _ in client.executed] == [
            "workflows",
            "workflow_edges",
            "workflow_nodes",
            "workflow_nodes",
        ]
        assert client.executed[0][1][0][1][0]["name"] == "Renamed"
        assert client.executed[1][1][0][0] == "delete"
        assert client.executed[3][1][0][0] == "insert"

    def test_update_missing_workflow_raises(self):
        with pytest.raises(LookupError):
            SupabaseRunStore(FakeSupabase()).update_workflow("missing", name="x")

    def test_list_workflows_filters_by_owner(self):
        client = FakeSupabase({"workflows": [{"id": "wf-1", "user_id": TEST_USER_ID}]})

        workflows = SupabaseRunStore(client).list_workflows(TEST_USER_ID)

        assert [w.id for w in workflows] == ["wf-1"]
        _, ops = client.executed[0]
        assert ("eq", ("user_id", TEST_USER_ID), {}) in ops
        assert ("order", ("updated_at",), {"desc": True}) in ops
