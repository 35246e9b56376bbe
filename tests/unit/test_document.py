"""
Unit tests for documents.

Tests cover:
- Field access, nested objects and strict mode
- Virtuals, methods and statics on variants
- Discriminator key protection
- Validation and hook ordering
- Serialization to dicts and extended JSON
- DocumentArray mutation through dispatch
"""

import json

import pytest

from polydoc.errors import (
    CastError,
    DiscriminatorKeyProtectedError,
    PolyDocError,
    ValidationError,
)
from polydoc.model import DocumentArray, NestedView
from polydoc.schema import Schema


@pytest.fixture
def person(registry):
    schema = Schema(
        {
            "name": {"first": str, "last": str},
            "age": {"type": int, "min": 0},
            "email": {"type": str, "required": True},
            "status": {"type": str, "default": "active"},
        }
    )
    schema.virtual("name.full").getter(lambda doc: f"{doc.name.first} {doc.name.last}").setter(
        lambda doc, value: (doc.set("name.first", value.split()[0]), doc.set("name.last", value.split()[1]))
    )
    schema.method("greet", lambda doc: f"hi {doc.name.first}")
    schema.static("by_email", lambda model, email: f"{model.name}:{email}")
    return registry.model("Person", schema)


@pytest.fixture
def events(registry):
    event = Schema({"message": str}, discriminator_key="kind", id=False)
    batch = Schema({"events": [event]})
    batch.path("events").discriminator("Clicked", {"element": {"type": str, "required": True}})
    batch.path("events").discriminator("Purchased", {"product": str})
    return registry.model("Batch", batch)


class TestAccess:
    """Tests for reading and writing values."""

    def test_attribute_and_item_access(self, person):
        doc = person({"name": {"first": "Ada", "last": "L"}, "age": "36"})

        assert doc.age == 36
        assert doc["name.first"] == "Ada"
        assert doc.get("name.last") == "L"

    def test_nested_view(self, person):
        doc = person({"name": {"first": "Ada"}})

        assert isinstance(doc.name, NestedView)
        doc.name.last = "Lovelace"
        assert doc.name == {"first": "Ada", "last": "Lovelace"}

    def test_defaults(self, person):
        doc = person()

        assert doc.status == "active"
        assert doc._id is not None

    def test_strict_drops_unknown(self, person):
        doc = person({"unknown": 1})

        assert "unknown" not in doc.to_dict()

    def test_non_strict_keeps_unknown(self, registry):
        model = registry.model("Loose", Schema({"a": int}, strict=False))

        doc = model({"b": {"c": 1}})
        doc.d = 2

        assert doc.to_dict()["b"] == {"c": 1}
        assert doc.get("d") == 2

    def test_cast_error_recorded(self, person):
        doc = person({"age": "old"})

        assert isinstance(doc.errors["age"], CastError)
        assert doc.age is None

    def test_set_clears_error(self, person):
        doc = person({"age": "old"})
        doc.age = 3

        assert "age" not in doc.errors

    def test_mixed_values_copied(self, registry):
        model = registry.model("Blob", Schema({"data": dict}))
        raw = {"data": {"a": [1]}}

        doc = model(raw)
        raw["data"]["a"].append(2)

        assert doc.data == {"a": [1]}

    def test_cast_error_survives_default(self, registry):
        """A value that fails to cast is reported, not replaced by the default."""
        model = registry.model("Counter", Schema({"n": {"type": int, "default": 1}}))

        doc = model({"n": "abc"})

        assert doc.n is None
        assert isinstance(doc.errors["n"], CastError)
        assert list(doc.validate_sync().errors) == ["n"]

    def test_bad_id_reported(self, person):
        doc = person({"_id": "not-an-id", "email": "a@b.c"})

        assert "_id" in doc.validate_sync().errors


class TestBehaviour:
    """Tests for virtuals, methods and statics."""

    def test_virtual_getter(self, person):
        doc = person({"name": {"first": "Ada", "last": "Lovelace"}})

        assert doc.get("name.full") == "Ada Lovelace"

    def test_virtual_setter_from_raw(self, person):
        """Virtual values in the raw input run setters after loading."""
        doc = person({"name": {"full": "Grace Hopper"}})

        assert doc.name.first == "Grace"
        assert doc.name.last == "Hopper"

    def test_method(self, person):
        assert person({"name": {"first": "Ada"}}).greet() == "hi Ada"

    def test_static(self, person):
        assert person.by_email("a@b.c") == "Person:a@b.c"

    def test_unknown_attribute(self, person):
        with pytest.raises(AttributeError):
            person().nope

    def test_child_inherits_methods(self, registry):
        base = Schema({"name": str}, discriminator_key="kind").method("describe", lambda doc: doc.name)
        model = registry.model("Animal", base)
        dog = model.discriminator("Dog", Schema({"bark": str}).method("speak", lambda doc: doc.bark))

        doc = dog({"name": "rex", "bark": "woof"})

        assert doc.describe() == "rex"
        assert doc.speak() == "woof"
        assert doc.is_a("Animal")


class TestDiscriminatorKey:
    """Tests for the discriminator key on documents."""

    @pytest.fixture
    def shape(self, registry):
        shape = registry.model("Shape", Schema({"name": str}, discriminator_key="kind"))
        shape.discriminator("Circle", {"radius": float})
        return shape

    def test_key_set_from_tied_value(self, shape):
        doc = shape({"kind": "Circle", "radius": 1})

        assert doc.kind == "Circle"
        assert doc.to_dict()["kind"] == "Circle"

    def test_reassign_records_error(self, shape):
        """Changing the key of a child document is rejected."""
        doc = shape({"kind": "Circle"})
        doc.kind = "Square"

        assert doc.kind == "Circle"
        error = doc.errors["kind"]
        assert isinstance(error, DiscriminatorKeyProtectedError)
        assert error.message == 'Can\'t set discriminator key "kind"'

    def test_same_value_allowed(self, shape):
        doc = shape({"kind": "Circle"})
        doc.kind = "Circle"

        assert "kind" not in doc.errors

    def test_embedded_key_protected(self, events):
        doc = events({"events": [{"kind": "Clicked", "element": "a"}]})
        doc.events[0].kind = "Purchased"

        assert doc.events[0].variant == "Clicked"
        assert isinstance(doc.events[0].errors["kind"], DiscriminatorKeyProtectedError)

    def test_foreign_key_on_construction(self, registry):
        """Building a child with another key value records an error."""
        person = registry.model("Person", Schema({"name": str}))
        employee = person.discriminator("Employee", {"department": str})

        doc = employee({"__t": "fake", "name": "x"})

        assert doc.get("__t") == "Employee"
        error = doc.validate_sync()
        assert list(error.errors) == ["__t"]
        assert error.errors["__t"].message == 'Can\'t set discriminator key "__t"'

    @pytest.mark.asyncio
    async def test_foreign_key_blocks_save(self, registry, store):
        person = registry.model("Person", Schema({"name": str}))
        employee = person.discriminator("Employee", {"department": str})

        with pytest.raises(ValidationError):
            await employee.create({"__t": "fake"})

        assert await store.count("person") == 0

    def test_name_accepted_for_tied_value(self, registry):
        """Dispatch by variant name stores the tied value without an error."""
        shape = registry.model("Figure", Schema({"name": str}, discriminator_key="kind"))
        shape.discriminator("Square", {"side": int}, "sq")

        doc = shape({"kind": "Square"})

        assert doc.variant == "Square"
        assert doc.kind == "sq"
        assert doc.errors == {}


class TestValidation:
    """Tests for validate() and hooks."""

    @pytest.mark.asyncio
    async def test_valid(self, person):
        doc = person({"email": "a@b.c"})

        assert await doc.validate() is doc

    @pytest.mark.asyncio
    async def test_errors_collected(self, person):
        doc = person({"age": -1})

        with pytest.raises(ValidationError) as exc_info:
            await doc.validate()

        assert set(exc_info.value.errors) == {"age", "email"}
        assert exc_info.value.owner == "Person"

    @pytest.mark.asyncio
    async def test_embedded_errors_use_full_paths(self, events):
        doc = events({"events": [{"kind": "Purchased"}, {"kind": "Clicked"}]})

        with pytest.raises(ValidationError) as exc_info:
            await doc.validate()

        assert list(exc_info.value.errors) == ["events.1.element"]

    @pytest.mark.asyncio
    async def test_validate_hooks_order(self, registry):
        """Pre hooks run parent first; post hooks run subdocuments first."""
        calls = []
        item = Schema({"n": int})
        item.pre("validate", lambda doc: calls.append("pre:item"))
        item.post("validate", lambda doc: calls.append("post:item"))
        parent = Schema({"items": [item]})
        parent.pre("validate", lambda doc: calls.append("pre:parent"))
        parent.post("validate", lambda doc: calls.append("post:parent"))
        model = registry.model("Parent", parent)

        await model({"items": [{"n": 1}]}).validate()

        assert calls == ["pre:parent", "pre:item", "post:item", "post:parent"]

    @pytest.mark.asyncio
    async def test_hooks_can_fix_documents(self, person):
        person.schema.pre("validate", lambda doc: doc.set("email", "fixed@x.y"))

        doc = await person().validate()

        assert doc.email == "fixed@x.y"

    @pytest.mark.asyncio
    async def test_subdocument_save_rejected(self, events):
        doc = events({"events": [{"kind": "Purchased"}]})

        with pytest.raises(PolyDocError, match="saved through their top-level document"):
            await doc.events[0].save()


class TestSerialization:
    """Tests for to_dict() and to_json()."""

    def test_to_dict_includes_subdocuments(self, events):
        doc = events({"events": [{"kind": "Purchased", "product": "book"}]})

        assert doc.to_dict()["events"] == [{"kind": "Purchased", "product": "book"}]

    def test_virtuals_optional(self, person):
        doc = person({"name": {"first": "Ada", "last": "L"}})

        assert "full" not in doc.to_dict()["name"]
        assert doc.to_dict(virtuals=True)["name"]["full"] == "Ada L"

    def test_to_dict_option(self, registry):
        schema = Schema({"a": int}, to_dict={"virtuals": True})
        schema.virtual("double").getter(lambda doc: doc.a * 2)
        model = registry.model("Doubled", schema)

        assert model({"a": 2}).to_dict()["double"] == 4

    def test_to_json_extended(self, person):
        doc = person({"email": "a@b.c"})

        data = json.loads(doc.to_json())

        assert data["_id"] == {"$oid": str(doc._id)}
        assert data["email"] == "a@b.c"

    def test_repr(self, events):
        assert repr(events({"events": []})).startswith("Batch(")


class TestDocumentArray:
    """Tests for DocumentArray mutation."""

    def test_push_dispatches(self, events):
        doc = events()

        length = doc.events.push({"kind": "Clicked", "element": "a"}, {"kind": "Purchased"})

        assert length == 2
        assert [e.variant for e in doc.events] == ["Clicked", "Purchased"]

    def test_append_insert_extend(self, events):
        doc = events()
        doc.events.append({"kind": "Clicked", "element": "a"})
        doc.events.insert(0, {"kind": "Purchased"})
        doc.events.extend([{"message": "m"}])
        doc.events += [{"kind": "Clicked", "element": "b"}]

        assert [e.variant for e in doc.events] == ["Purchased", "Clicked", "events", "Clicked"]

    def test_setitem_dispatches(self, events):
        doc = events({"events": [{"kind": "Purchased"}]})
        doc.events[0] = {"kind": "Clicked", "element": "x"}
        doc.events[0:1] = [{"kind": "Purchased", "product": "p"}]

        assert doc.events[0].variant == "Purchased"

    def test_set_by_index_path(self, events):
        doc = events({"events": [{"kind": "Purchased"}]})
        doc.set("events.0.product", "book")
        doc.set("events.0", {"kind": "Clicked", "element": "y"})

        assert doc.events[0].variant == "Clicked"
        assert doc.get("events.0.element") == "y"

    def test_create_does_not_add(self, events):
        doc = events()
        element = doc.events.create({"kind": "Clicked", "element": "a"})

        assert element.variant == "Clicked"
        assert len(doc.events) == 0

    def test_elements_know_parent(self, events):
        doc = events({"events": [{"kind": "Clicked", "element": "a"}]})

        assert doc.events[0].parent is doc
        assert isinstance(doc.events, DocumentArray)
        assert doc.events.to_list() == [{"kind": "Clicked", "element": "a"}]

    def test_unknown_element_recorded(self, events):
        doc = events({"events": [{"kind": "Nope"}]})

        error = doc.validate_sync()
        assert "events.0.kind" in error.errors
