"""Tests for polymorphic loading: morph_many / morph_one_of_many / morph_to, and pivot relations."""

import logging

import pytest

from readorm import PolymorphicModelUnresolved, RelationKindMismatch, RelationNotFound, RelationState, morph_map

from tests.models import Image, Post, Tag, User

pytestmark = pytest.mark.anyio


class TestMorphOwned:
    """Test the owning side of polymorphic relations."""

    async def test_morph_many(self, runner):
        users = await User.query().with_("images").order_by("id").get()
        assert [[i.url for i in u.images] for u in users] == [["u1-old.png", "u1-new.png"], [], [], []]
        assert runner.calls[-1] == (
            "SELECT * FROM images WHERE imageable_type IN (?) AND imageable_id IN (?, ?, ?, ?)",
            ["User", 1, 2, 3, 4],
        )

    async def test_all_aliases_queried(self, runner):
        morph_map.register({"member": User})
        await User.query().with_("images").get()
        assert runner.calls[-1][1][:2] == ["member", "User"]

    async def test_unregistered_subtype_gets_empty_lists(self, runner):
        class Guest(User):
            pass

        guests = await Guest.query().with_("images").get()
        assert [g.images for g in guests] == [[], [], [], []]
        assert runner.calls[-1][1][0] == "Guest"

    async def test_morph_one_of_many(self, runner):
        users = await User.query().with_("avatar").order_by("id").get()
        assert users[0].avatar.url == "u1-new.png"
        assert users[1].avatar is None
        assert ("images.created_at = (SELECT MAX(sub.created_at) FROM images sub WHERE"
                " sub.imageable_type = images.imageable_type AND sub.imageable_id = images.imageable_id)"
                ) in runner.calls[-1][0]

    async def test_related_query(self, runner):
        post = await Post.find(1)
        images = await post.related("images").get()
        assert [i.url for i in images] == ["p1.png"]


class TestMorphTo:
    """Test the owned side of polymorphic relations."""

    async def test_one_fetch_per_concrete_model(self, runner, readorm_logs):
        images = await Image.query().with_("imageable").order_by("id").get()
        owners = [i.imageable for i in images]
        assert isinstance(owners[0], User) and owners[0].name == "alice"
        assert owners[1] is owners[0]
        assert isinstance(owners[2], Post) and owners[2].title == "alice-1"
        assert owners[3] is None
        assert owners[4] is None
        assert len(runner.statements_on("users")) == 1
        assert len(runner.statements_on("posts")) == 1
        warnings = [r.getMessage() for r in readorm_logs.records if r.levelno == logging.WARNING]
        assert warnings == ["Cannot resolve morph type `Video` for Image.imageable, assigning None"]

    async def test_aliases_resolve(self, runner, database):
        database.execute("UPDATE images SET imageable_type = 'member' WHERE imageable_type = 'User'")
        morph_map.register({"member": User})
        image = await Image.query().with_("imageable").find(1)
        assert image.imageable.name == "alice"

    async def test_nested_after_morph_to(self, runner):
        images = await Image.query().where_in("id", [1, 3]).with_("imageable.images").order_by("id").get()
        assert [i.url for i in images[0].imageable.images] == ["u1-old.png", "u1-new.png"]
        assert [i.url for i in images[1].imageable.images] == ["p1.png"]

    async def test_nested_relation_missing_on_some_owners(self, runner):
        images = await Image.query().where_in("id", [1, 3]).with_("imageable.author").order_by("id").get()
        user, post = images[0].imageable, images[1].imageable
        assert post.author.name == "alice"
        assert user.relation_state("author") is RelationState.NOT_REQUESTED
        assert len(runner.statements_on("users")) == 2

    async def test_unknown_nested_relation_still_raises(self, runner):
        with pytest.raises(RelationNotFound):
            await Post.query().with_("author.nope").get()

    async def test_related_query(self, runner):
        image = await Image.find(3)
        assert (await image.related("imageable").first()).title == "alice-1"
        orphan = await Image.find(4)
        with pytest.raises(PolymorphicModelUnresolved):
            orphan.related("imageable")


class TestPivot:
    """Test belongs_to_many loading with pivot data."""

    async def test_pivot_data_per_parent(self, runner):
        posts = await Post.query().with_("tags").order_by("id").get()
        first, second, third, fourth = posts
        assert [(t.name, t.tagging) for t in first.tags] == [
            ("python", {"weight": 5, "tagged_at": "2024-01-02"}),
            ("sql", {"weight": 1, "tagged_at": "2024-01-03"}),
        ]
        assert [(t.name, t.tagging) for t in third.tags] == [("python", {"weight": 9, "tagged_at": "2024-02-02"})]
        assert second.tags == [] and fourth.tags == []
        assert first.tags[0] is not third.tags[0]

    async def test_pivot_statement(self, runner):
        await Post.query().with_("tags").get()
        assert runner.calls[-1][0] == (
            "SELECT tags.*, post_tag.post_id AS __pivot_fk, post_tag.weight AS tagging__weight,"
            " post_tag.tagged_at AS tagging__tagged_at FROM tags"
            " INNER JOIN post_tag ON tags.id = post_tag.tag_id WHERE post_tag.post_id IN (?, ?, ?, ?)"
        )

    async def test_reverse_without_pivot_columns(self, runner):
        tags = await Tag.query().with_("posts").order_by("id").get()
        assert [p.id for p in tags[0].posts] == [1, 3]
        assert [p.id for p in tags[1].posts] == [1]
        assert "__pivot_fk" not in tags[0].posts[0].model_extra
        assert "pivot" not in tags[0].posts[0].model_extra

    async def test_column_restriction(self, runner):
        posts = await Post.query().with_("tags:id,name").where("id", 1).get()
        assert runner.calls[-1][0].startswith("SELECT tags.id, tags.name, post_tag.post_id AS __pivot_fk")
        assert len(posts[0].tags) == 2

    async def test_related_query(self, runner):
        post = await Post.find(1)
        tags = await post.related("tags").get()
        assert sorted(t.name for t in tags) == ["python", "sql"]
        assert "__pivot_fk" not in tags[0].model_extra


class TestRelationQueries:
    def test_morph_to_has_no_fixed_query(self):
        from readorm.loading import relation_query
        from readorm.relations import require_relation

        with pytest.raises(RelationKindMismatch):
            relation_query(require_relation(Image, "imageable"), Image, [1])
