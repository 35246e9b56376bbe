"""
Compiled models.

A CompiledModel binds a schema to a name, a collection and the registry's
collection store. Calling a model builds a document through dispatch;
the async methods run queries against the store with the schema's query
hooks around them.

Discriminators registered on a model produce child models that:
- use the merged child schema (base paths, hooks, methods, statics and
  virtuals plus the child's own)
- share the base model's collection and store
- scope every query with ``{key: tied value}``
- are registered in the owning ModelRegistry under their own name

Invariants:
    - Registration is atomic: every check (including the registry name)
      runs before the base schema, its registry or the model table change
    - Only root models accept discriminators
    - A child model's ancestry is (child, base); is_a(base) holds for its
      documents

How to change safely:
    - New query operations should build a Query and run the schema's
      pre/post hooks for their operation name
"""

from __future__ import annotations

import logging
import types
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from ..errors import PolyDocError
from ..schema.discriminator import (
    DiscriminatorRegistry,
    Variant,
    as_schema,
    build_child_schema,
    mark_root,
)
from .dispatch import instantiate
from .document import Document
from .projection import apply_always_included, default_projection, normalize
from .update import prepare_update

if TYPE_CHECKING:
    from ..schema.schema import Schema
    from ..store.base import CollectionStore
    from .registry import ModelRegistry

logger = logging.getLogger(__name__)


@dataclass
class Query:
    """A query passed to query hooks.

    Pre hooks may modify ``filter``, ``update`` and ``projection`` before
    the query runs; post hooks see ``result``.
    """

    op: str
    filter: dict[str, Any]
    update: dict[str, Any] | None = None
    projection: dict[str, int] | None = None
    options: dict[str, Any] = field(default_factory=dict)
    model: CompiledModel | None = None
    result: Any = None


class CompiledModel:
    """A schema compiled under a name.

    Args:
        name: Model name
        schema: Effective (compiled) schema
        registry: Owning model registry
        collection: Collection name in the store
        base: Base model, for discriminator children
        tied_value: Stored key value, for discriminator children

    Example:
        >>> Event = registry.model("Event", Schema({"message": str}, discriminator_key="kind"))
        >>> Clicked = Event.discriminator("Clicked", {"element": str})
        >>> doc = Event({"kind": "Clicked", "element": "#hero"})
        >>> doc.model is Clicked
        True
    """

    def __init__(
        self,
        name: str,
        schema: Schema,
        *,
        registry: ModelRegistry,
        collection: str,
        base: CompiledModel | None = None,
        tied_value: Any = None,
    ) -> None:
        self.name = name
        self.schema = schema
        self.registry = registry
        self.collection = collection
        self.base = base
        self.tied_value = tied_value
        ancestry = (name, *base.ancestry) if base is not None else (name,)
        self.variant = Variant(name, schema, tied_value, ancestry)
        self.discriminators: dict[str, CompiledModel] | None = None
        self.source_schema: Schema | None = None

    @property
    def base_model_name(self) -> str | None:
        return self.base.name if self.base is not None else None

    @property
    def ancestry(self) -> tuple[str, ...]:
        return self.variant.ancestry

    @property
    def is_root(self) -> bool:
        return self.base is None

    @property
    def store(self) -> CollectionStore:
        return self.registry.store

    def __getattr__(self, name: str) -> Any:
        schema = self.__dict__.get("schema")
        if schema is not None and name in schema.statics:
            return types.MethodType(schema.statics[name], self)
        raise AttributeError(f"Model '{self.__dict__.get('name')}' has no attribute '{name}'")

    def __repr__(self) -> str:
        return f"CompiledModel({self.name!r}, collection={self.collection!r})"

    # -- documents ----------------------------------------------------------------

    def __call__(self, raw: dict[str, Any] | None = None, **fields: Any) -> Document:
        """Build a new document, dispatched on its discriminator key."""
        return self._instantiate({**(raw or {}), **fields}, is_new=True)

    def hydrate(self, raw: dict[str, Any], projection: Any = None) -> Document:
        """Build a document from stored data."""
        return self._instantiate(raw, is_new=False, projection=projection)

    def _instantiate(self, raw: dict[str, Any], *, is_new: bool, projection: Any = None) -> Document:
        if is_new:
            model = self
            registry = self.schema.discriminators if self.base is None else None
        else:
            # stored documents may carry a sibling's key, or none, after a variant change
            model = self.base or self
            registry = model.schema.discriminators
        return instantiate(
            model.variant, registry, raw, model=model, is_new=is_new, projection=normalize(projection)
        )

    def model_for(self, variant: str) -> CompiledModel:
        """Model of the hierarchy member named ``variant`` (self if unknown)."""
        root = self.base or self
        if variant == root.name:
            return root
        return (root.discriminators or {}).get(variant, self)

    # -- discriminators -------------------------------------------------------------

    def discriminator(
        self,
        name: Any,
        schema: Any = None,
        tied_value: Any = None,
        *,
        clone: bool = True,
    ) -> CompiledModel:
        """Register a discriminator child of this model.

        Args:
            name: Child model name (also the default tied value)
            schema: Child Schema, definition dict, or another compiled model
            tied_value: Stored key value identifying the child
            clone: Copy the child's paths into the merged schema

        Returns:
            The child model

        Raises:
            RegistrationError: If any registration precondition fails
            ModelOverwriteError: If a model named ``name`` already exists
        """
        if isinstance(schema, CompiledModel):
            schema = schema.schema
        child = as_schema(schema)
        if self.registry.apply_plugins_to_discriminators:
            child = child.clone()
            self.registry.apply_plugins(child)

        merged, value = build_child_schema(
            self.schema, name, child, tied_value, registry=self.schema.discriminators, clone=clone
        )
        label = str(name)
        self.registry.ensure_available(label)

        if self.schema.discriminators is None:
            self.schema.discriminators = DiscriminatorRegistry(self.schema.discriminator_key, owner=self.name)
        mark_root(self.schema)

        child_model = CompiledModel(
            label,
            merged,
            registry=self.registry,
            collection=self.collection,
            base=self,
            tied_value=value,
        )
        child_model.source_schema = child
        self.schema.discriminators.register(child_model.variant)
        if self.discriminators is None:
            self.discriminators = {}
        self.discriminators[label] = child_model
        self.registry.register(child_model)

        logger.info(f"Registered discriminator '{label}' on model '{self.name}' (value={value!r})")
        return child_model

    # -- queries ----------------------------------------------------------------------

    def _scope(self, filter: dict[str, Any] | None) -> dict[str, Any]:
        scoped = dict(filter or {})
        if self.base is None:
            return scoped
        key = self.schema.discriminator_key
        if key in scoped:
            return {"$and": [scoped, {key: self.tied_value}]}
        scoped[key] = self.tied_value
        return scoped

    def _read_projection(self, projection: Any) -> dict[str, int] | None:
        spec = normalize(projection)
        if spec is None:
            spec = default_projection(self.schema)
        return apply_always_included(self.schema, spec)

    def _cast_id(self, value: Any) -> Any:
        id_path = self.schema.paths.get("_id")
        return id_path.cast(value) if id_path is not None else value

    async def _run(self, query: Query, action: Callable[[], Awaitable[Any]]) -> Any:
        await self.schema.hooks.run("pre", query.op, query)
        query.result = await action()
        await self.schema.hooks.run("post", query.op, query)
        return query.result

    async def create(self, raw: Any) -> Any:
        """Build, validate and save one document (or a list of them)."""
        if isinstance(raw, list):
            return [await self.create(item) for item in raw]
        doc = raw if isinstance(raw, Document) else self(raw)
        return await doc.save()

    async def find(
        self,
        filter: dict[str, Any] | None = None,
        projection: Any = None,
        *,
        sort: Any = None,
        limit: int | None = None,
        skip: int = 0,
    ) -> list[Document]:
        query = Query(
            "find",
            self._scope(filter),
            projection=self._read_projection(projection),
            options={"sort": sort, "limit": limit, "skip": skip},
            model=self,
        )

        async def action() -> list[Document]:
            raws = await self.store.find(
                self.collection,
                query.filter,
                query.projection,
                sort=query.options.get("sort"),
                limit=query.options.get("limit"),
                skip=query.options.get("skip") or 0,
            )
            return [self.hydrate(raw, query.projection) for raw in raws]

        return await self._run(query, action)

    async def find_one(
        self, filter: dict[str, Any] | None = None, projection: Any = None
    ) -> Document | None:
        query = Query("find_one", self._scope(filter), projection=self._read_projection(projection), model=self)

        async def action() -> Document | None:
            raw = await self.store.find_one(self.collection, query.filter, query.projection)
            return self.hydrate(raw, query.projection) if raw is not None else None

        return await self._run(query, action)

    async def find_by_id(self, id: Any, projection: Any = None) -> Document | None:
        return await self.find_one({"_id": self._cast_id(id)}, projection)

    async def update_one(
        self,
        filter: dict[str, Any],
        update: dict[str, Any],
        *,
        run_validators: bool = False,
        overwrite_discriminator_key: bool = False,
    ) -> int:
        """Cast and apply an update to the first matching document.

        Returns:
            Number of matched documents (0 or 1)

        Raises:
            ValidationError: If the update does not cast (or validate)
        """
        query = Query(
            "update_one",
            self._scope(filter),
            update=update,
            options={
                "run_validators": run_validators,
                "overwrite_discriminator_key": overwrite_discriminator_key,
            },
            model=self,
        )

        async def action() -> int:
            cast = prepare_update(
                self,
                query.filter,
                query.update or {},
                run_validators=run_validators,
                overwrite_discriminator_key=overwrite_discriminator_key,
            )
            if not cast:
                return 1 if await self.store.find_one(self.collection, query.filter, {"_id": 1}) else 0
            return await self.store.update_one(self.collection, query.filter, cast)

        return await self._run(query, action)

    async def find_one_and_update(
        self,
        filter: dict[str, Any],
        update: dict[str, Any],
        *,
        new: bool = True,
        projection: Any = None,
        run_validators: bool = False,
        overwrite_discriminator_key: bool = False,
    ) -> Document | None:
        """Cast and apply an update, returning the document (after it by default)."""
        query = Query(
            "find_one_and_update",
            self._scope(filter),
            update=update,
            projection=self._read_projection(projection),
            options={
                "new": new,
                "run_validators": run_validators,
                "overwrite_discriminator_key": overwrite_discriminator_key,
            },
            model=self,
        )

        async def action() -> Document | None:
            cast = prepare_update(
                self,
                query.filter,
                query.update or {},
                run_validators=run_validators,
                overwrite_discriminator_key=overwrite_discriminator_key,
            )
            if cast:
                raw = await self.store.find_one_and_update(
                    self.collection, query.filter, cast, projection=query.projection, return_new=new
                )
            else:
                raw = await self.store.find_one(self.collection, query.filter, query.projection)
            return self.hydrate(raw, query.projection) if raw is not None else None

        return await self._run(query, action)

    async def find_by_id_and_update(self, id: Any, update: dict[str, Any], **kwargs: Any) -> Document | None:
        return await self.find_one_and_update({"_id": self._cast_id(id)}, update, **kwargs)

    async def delete_many(self, filter: dict[str, Any] | None = None) -> int:
        query = Query("delete_many", self._scope(filter), model=self)

        async def action() -> int:
            return await self.store.delete_many(self.collection, query.filter)

        return await self._run(query, action)

    async def count_documents(self, filter: dict[str, Any] | None = None) -> int:
        return await self.store.count(self.collection, self._scope(filter))

    async def _persist(self, doc: Document) -> None:
        data = doc.to_dict(virtuals=False)
        if doc.is_new:
            await self.store.insert_one(self.collection, data)
            logger.debug(f"Inserted {self.name} document into '{self.collection}'")
            return
        if "_id" not in data:
            raise PolyDocError(f"Cannot save a loaded {self.name} document without an _id")
        fields = {k: v for k, v in data.items() if k != "_id"}
        if fields:
            await self.store.update_one(self.collection, {"_id": data["_id"]}, {"$set": fields})

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation for describe and fingerprinting."""
        result: dict[str, Any] = {
            "name": self.name,
            "collection": self.collection,
            "schema": self.schema.to_dict(),
        }
        if self.base is not None:
            result["base"] = self.base.name
            result["value"] = self.schema.discriminator_mapping.to_dict()["value"]
        if self.discriminators:
            result["discriminators"] = sorted(self.discriminators)
        return result
