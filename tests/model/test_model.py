"""Tests for Model: metadata, hydration, identity, relation state and related() queries."""

import copy
import json

import pytest

from readorm import Collection, Model, RelationNotLoaded, RelationState, belongs_to, has_many, morph_map
from readorm.model import _WithSoftDelete

from tests.models import Comment, Country, Image, Post, Tag, User

pytestmark = pytest.mark.anyio


class TestMetadata:
    def test_table_name(self):
        class Article(Model):
            id: int

        assert Article.get_table_name() == "articles"
        assert User.get_table_name() == "users"

    def test_table_inherited(self):
        class Admin(User):
            pass

        assert Admin.get_table_name() == "users"
        assert Admin.get_connection_name() == "default"

    def test_connection_name(self):
        class Remote(Model, connection_name="replica"):
            id: int

        assert Remote.get_connection_name() == "replica"

    def test_soft_deletes(self):
        assert Post.uses_soft_deletes()
        assert issubclass(Post, _WithSoftDelete)
        assert not User.uses_soft_deletes()

        class ArchivedPost(Post):
            pass

        assert ArchivedPost.uses_soft_deletes()

    def test_morph_type(self):
        assert User.morph_type() == "User"
        morph_map.register({"member": User})
        assert User.morph_type() == "member"

        class Page(Model, morph_class="page"):
            id: int

        assert Page.morph_type() == "page"


class TestHydration:
    def test_extra_columns_kept(self):
        user = User.from_row({"id": 1, "name": "alice", "country_id": None, "score": 3})
        assert user.score == 3
        assert user.model_extra == {"score": 3}


class TestSerialization:
    """Test model_dump with loaded relations and hidden names."""

    def test_unloaded_relations_left_out(self):
        assert User(id=1, name="alice").model_dump() == {"id": 1, "name": "alice", "country_id": None}

    async def test_loaded_graph_dumped(self, runner):
        alice = await User.query().with_(["posts.comments", "country"]).find(1)
        data = alice.model_dump()
        assert data["country"] == {"id": 1, "name": "France"}
        assert [p["title"] for p in data["posts"]] == ["alice-1", "alice-2"]
        assert [c["body"] for c in data["posts"][0]["comments"]] == ["first", "second"]
        assert data["posts"][1]["comments"] == []
        assert data["posts"][0]["deleted_at"] is None

    async def test_json_mode(self, runner):
        alice = await User.query().with_("posts").find(1)
        data = json.loads(alice.model_dump_json())
        assert [p["id"] for p in data["posts"]] == [1, 2]

    async def test_empty_single_relation(self, runner):
        dave = await User.query().with_("country").find(4)
        assert dave.model_dump()["country"] is None

    def test_exclude_applies_to_relations(self):
        user = User(id=1, name="alice")
        user.set_relation("posts", [])
        assert "posts" not in user.model_dump(exclude={"posts"})

    async def test_hidden_columns_and_relations(self, runner):
        class Member(Model, table="users", hidden=["country_id", "posts"]):
            id: int
            name: str
            country_id: int | None = None

            posts = has_many("Post", "user_id")
            country = belongs_to(Country)

        member = await Member.query().with_(["posts", "country"]).find(1)
        assert member.country_id == 1
        assert len(member.posts) == 2
        assert member.model_dump() == {"id": 1, "name": "alice", "country": {"id": 1, "name": "France"}}

    def test_hidden_inherited(self):
        class Secretive(Model, hidden=["token"]):
            id: int
            token: str

        class MoreSecretive(Secretive):
            pass

        assert MoreSecretive(id=1, token="x").model_dump() == {"id": 1}


class TestIdentity:
    def test_equality_by_class_and_id(self):
        assert User(id=1, name="alice") == User(id=1, name="someone else")
        assert User(id=1, name="alice") != User(id=2, name="alice")
        assert Tag(id=1, name="x") != User(id=1, name="x")

    def test_rows_without_id(self):
        class Note(Model):
            text: str

        first, second = Note(text="a"), Note(text="a")
        assert first == first
        assert first != second
        assert len({first, second}) == 2

    def test_hash(self):
        assert len({User(id=1, name="a"), User(id=1, name="b"), User(id=2, name="c")}) == 2

    def test_deepcopy_returns_same_object(self):
        user = User(id=1, name="alice")
        assert copy.deepcopy(user) is user
        assert copy.deepcopy({"user": user})["user"] is user


class TestRelationState:
    def test_unloaded_relation_raises(self):
        user = User(id=1, name="alice")
        assert user.relation_state("posts") is RelationState.NOT_REQUESTED
        with pytest.raises(RelationNotLoaded, match="`posts` of User is not loaded"):
            user.posts

    def test_set_and_forget(self):
        user = User(id=1, name="alice")
        user.set_relation("country", None)
        assert user.country is None
        assert user.relation_loaded("country")
        assert user.loaded_relations == {"country": None}
        user.forget_relation("country")
        assert not user.relation_loaded("country")

    def test_declaration_on_class(self):
        assert User.posts.name == "posts"
        assert User.posts.owner is User


class TestCollections:
    async def test_members_adopted(self, runner):
        users = await User.query().get()
        assert isinstance(users, Collection)
        assert all(u._collection is users for u in users)

    async def test_each_query_has_its_own_collection(self, runner):
        first = await User.query().get()
        second = await User.query().get()
        assert first.id != second.id
        assert first[0]._collection is first

    async def test_loaded_relations_form_collections(self, runner):
        users = await User.query().with_("posts").get()
        collection = users[0].posts[0]._collection
        assert collection is users[1].posts[0]._collection
        assert len(collection) == 4


class TestRelated:
    async def test_has_many(self, runner):
        alice = await User.find(1)
        query = alice.related("posts")
        assert query.to_sql() == "SELECT * FROM posts WHERE user_id IN (?) AND posts.deleted_at IS NULL"
        assert query.get_bindings() == [1]
        assert [p.title for p in await query.order_by("id").get()] == ["alice-1", "alice-2"]

    async def test_constraints_applied(self, runner):
        post = await Post.find(1)
        assert post.related("comments").to_sql().endswith("ORDER BY id ASC")

    async def test_belongs_to(self, runner):
        comment = await Comment.find(3)
        assert (await comment.related("post").first()).title == "bob-1"

    async def test_belongs_to_many_has_no_key_tag(self, runner):
        tag = await Tag.find(1)
        sql = tag.related("posts").to_sql()
        assert "__pivot_fk" not in sql
        assert "WHERE post_tag.tag_id IN (?)" in sql

    async def test_morph_to(self, runner):
        image = await Image.find(1)
        query = image.related("imageable")
        assert query.to_sql() == "SELECT * FROM users WHERE users.id = ?"
        assert query.get_bindings() == [1]

    def test_unknown_relation(self):
        from readorm import RelationNotFound

        with pytest.raises(RelationNotFound):
            User(id=1, name="alice").related("nope")

    async def test_static_relation_table(self, runner):
        class Writer(Model, table="users"):
            id: int
            name: str

            __relations__ = {"writings": {"kind": "has_many", "model": "Post", "foreign_key": "user_id"}}

        writer = await Writer.find(2)
        await writer.load("writings")
        assert [p.title for p in writer.get_relation("writings")] == ["bob-1"]

    async def test_subclass_declared_relations(self, runner):
        class Editor(User):
            edits = has_many("Post", "user_id")

        editor = await Editor.find(1)
        await editor.load(["edits", "country"])
        assert len(editor.edits) == 2
        assert editor.country.name == "France"
