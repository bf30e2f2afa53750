import pytest

from workflow_core.errors import ConfigurationError, RegistryFrozenError, UnknownBlockTypeError
from workflow_core.handlers import (
    ContainerHandler,
    GenericHandler,
    HandlerRegistry,
    TriggerHandler,
    build_default_registry,
    default_handlers,
)
from workflow_core.schema import BlockType, ContainerSettings


def test_default_registry_covers_every_block_type():
    registry = build_default_registry()

    assert registry.frozen
    assert len(registry) == len(BlockType)
    for block_type in BlockType:
        assert block_type in registry
        assert registry.get(block_type.value) is registry.get(block_type)


def test_unknown_type_lookup_raises():
    registry = build_default_registry()

    with pytest.raises(UnknownBlockTypeError, match="nope"):
        registry.get("nope")
    assert registry.maybe_get("nope") is None
    assert "nope" not in registry


def test_frozen_registry_rejects_registration():
    registry = build_default_registry()

    with pytest.raises(RegistryFrozenError):
        registry.register(BlockType.GENERIC, GenericHandler())


def test_duplicate_registration_rejected():
    registry = HandlerRegistry({BlockType.GENERIC: GenericHandler()})

    with pytest.raises(ConfigurationError, match="already registered"):
        registry.register(BlockType.GENERIC, GenericHandler())


def test_incomplete_registry_fails_validation():
    registry = HandlerRegistry({BlockType.TRIGGER: TriggerHandler()})

    with pytest.raises(ConfigurationError, match="Missing handlers"):
        registry.validate_complete()


def test_overrides_replace_default_handler():
    custom = GenericHandler()

    registry = build_default_registry(overrides={BlockType.GENERIC: custom})

    assert registry.get(BlockType.GENERIC) is custom
    assert isinstance(default_handlers()[BlockType.LOOP], ContainerHandler)


def _settings(mode, count=3, collection=""):
    return ContainerSettings(
        container_id="c1",
        kind=BlockType.PARALLEL,
        mode=mode,
        count=count,
        collection=collection,
        max_concurrency=None,
    )


def test_container_items_for_count_mode():
    handler = ContainerHandler(BlockType.PARALLEL)

    assert handler.resolve_items(_settings("count", count=3), {}) == [0, 1, 2]
    assert handler.resolve_items(_settings("count", count=0), {}) == []


@pytest.mark.parametrize(
    "collection,variables,expected",
    [
        ("{{start.items}}", {"start": {"items": ["a", "b"]}}, ["a", "b"]),
        ('["x", "y"]', {}, ["x", "y"]),
        ("", {}, []),
        ({"k1": 1, "k2": 2}, {}, [["k1", 1], ["k2", 2]]),
        ([1, 2, 3], {}, [1, 2, 3]),
    ],
)
def test_container_items_for_collection_mode(collection, variables, expected):
    handler = ContainerHandler(BlockType.PARALLEL)

    assert handler.resolve_items(_settings("collection", collection=collection), variables) == expected


def test_container_rejects_non_list_collection():
    handler = ContainerHandler(BlockType.LOOP)

    with pytest.raises(ConfigurationError):
        handler.resolve_items(_settings("forEach", collection="not json"), {})
    with pytest.raises(ConfigurationError):
        handler.resolve_items(_settings("forEach", collection=42), {})
