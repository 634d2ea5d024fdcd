"""Tests for query execution: hydration, retrieval helpers, aggregates and chunking."""

import pytest

from readorm import Collection, connect
from readorm.errors import ConnectionNotReady, ModelNotFound, ReadOnlyViolation

from tests.models import Post, User

pytestmark = pytest.mark.anyio


class TestRetrieval:
    """Test get / first / find and friends."""

    async def test_get_hydrates_models(self, runner):
        users = await User.query().order_by("id").get()
        assert isinstance(users, Collection)
        assert [u.name for u in users] == ["alice", "bob", "carol", "dave"]
        assert all(isinstance(u, User) for u in users)
        assert users[3].country_id is None

    async def test_statement_and_params_reach_runner(self, runner):
        await User.query().where("name", "bob").get()
        assert runner.calls == [("SELECT * FROM users WHERE name = ?", ["bob"])]

    async def test_undeclared_columns_kept_as_extras(self, runner):
        users = await User.query().select_raw("UPPER(name) AS shout").where("id", 1).get()
        assert users[0].shout == "ALICE"
        assert users[0].model_extra == {"shout": "ALICE"}

    async def test_soft_deleted_rows_hidden(self, runner):
        titles = [p.title for p in await Post.query().where("user_id", 1).get()]
        assert "alice-deleted" not in titles
        trashed = await Post.query().only_trashed().get()
        assert [p.title for p in trashed] == ["alice-deleted"]
        assert trashed[0].deleted_at is not None

    async def test_first(self, runner):
        user = await User.query().order_by("id", "desc").first()
        assert user.name == "dave"
        assert runner.calls[-1][0].endswith("LIMIT 1")
        assert await User.query().where("id", 99).first() is None

    async def test_find(self, runner):
        assert (await User.find(2)).name == "bob"
        assert runner.calls[-1] == ("SELECT * FROM users WHERE users.id = ? LIMIT 1", [2])
        assert await User.find(42) is None

    async def test_or_fail(self, runner):
        with pytest.raises(ModelNotFound, match="42"):
            await User.find_or_fail(42)
        with pytest.raises(ModelNotFound):
            await User.query().where("name", "zed").first_or_fail()
        assert (await User.query().where("name", "bob").first_or_fail()).id == 2

    async def test_all(self, runner):
        assert len(await User.all()) == 4

    async def test_pluck_and_value(self, runner):
        assert await User.query().order_by("id").pluck("name") == ["alice", "bob", "carol", "dave"]
        assert await User.query().where("id", "<", 3).pluck("users.name", "id") == {1: "alice", 2: "bob"}
        assert await User.query().where("id", 3).value("name") == "carol"
        assert await User.query().where("id", 30).value("name") is None

    async def test_rows(self, runner):
        rows = await User.query().select("id").where("id", 1).rows()
        assert rows == [{"id": 1}]


class TestAggregates:
    """Test count/sum/avg/min/max/exists."""

    async def test_count_respects_conditions_and_scope(self, runner):
        assert await User.query().count() == 4
        assert await Post.query().count() == 4
        assert await Post.query().with_trashed().count() == 5
        assert await Post.query().where("user_id", 1).count() == 2

    async def test_aggregate_statement(self, runner):
        await User.query().where("id", ">", 1).order_by("name").limit(2).count()
        assert runner.calls[-1] == ("SELECT COUNT(*) AS aggregate FROM users WHERE id > ?", [1])

    async def test_numeric_aggregates(self, runner):
        assert await User.query().sum("id") == 10
        assert await User.query().avg("id") == 2.5
        assert await User.query().min("id") == 1
        assert await User.query().max("id") == 4

    async def test_exists(self, runner):
        assert await User.query().where("name", "alice").exists() is True
        assert await User.query().where("name", "nobody").doesnt_exist() is True


class TestIteration:
    """Test chunk and each."""

    async def test_chunk(self, runner):
        pages = []
        await User.query().order_by("id").chunk(3, lambda users: pages.append([u.id for u in users]))
        assert pages == [[1, 2, 3], [4]]

    async def test_chunk_stops_on_false(self, runner):
        pages = []

        async def collect(users):
            pages.append(len(users))
            return False

        await User.query().order_by("id").chunk(1, collect)
        assert pages == [1]

    async def test_each(self, runner):
        names = []
        await User.query().order_by("id").each(lambda user: names.append(user.name))
        assert names == ["alice", "bob", "carol", "dave"]


class TestConnections:
    """Test runner selection and failures."""

    async def test_no_connection(self):
        with pytest.raises(ConnectionNotReady, match="default"):
            await User.query().get()

    async def test_named_connection(self, database):
        class ArchivedUser(User, connection_name="archive"):
            pass

        connect(database, name="archive")
        users = await ArchivedUser.query().where("id", 1).get()
        assert users[0].name == "alice"
        assert isinstance(users[0], ArchivedUser)

    async def test_runner_errors_propagate(self, runner):
        runner.fail_on = "FROM users"
        with pytest.raises(RuntimeError, match="runner failure"):
            await User.query().get()

    async def test_statement_guard_runs_before_dispatch(self, runner):
        query = User.query()
        query.columns = ["id FROM users; DROP TABLE users --"]
        with pytest.raises(ReadOnlyViolation):
            await query.get()
        assert runner.calls == []
