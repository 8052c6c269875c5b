import pytest

from perfscope.errors import UnsupportedLanguage
from perfscope.js_tracer import JavaScriptHandler
from perfscope.python_tracer import PythonHandler
from perfscope.registry import ExecutionRegistry, default_registry

from conftest import FakeHandler


def test_register_rejects_duplicates():
    registry = ExecutionRegistry()
    registry.register("fake", FakeHandler())
    with pytest.raises(ValueError):
        registry.register("fake", FakeHandler())


def test_resolve_unknown_language():
    with pytest.raises(UnsupportedLanguage) as info:
        ExecutionRegistry().resolve("cobol")
    assert info.value.to_dict() == {
        "kind": "UnsupportedLanguage",
        "message": "Language 'cobol' is not supported",
        "language": "cobol",
    }


def test_default_registry_languages():
    registry = default_registry()
    assert isinstance(registry.resolve("python"), PythonHandler)
    assert isinstance(registry.resolve("javascript"), JavaScriptHandler)
    infos = {info.id: info for info in registry.languages()}
    assert infos["python"].name == "Python"
    assert infos["javascript"].version == "ES2021"


@pytest.mark.asyncio
async def test_shutdown_refuses_new_work():
    registry = ExecutionRegistry()
    registry.claim("a")
    assert registry.in_flight == ["a"]
    registry.release("a")
    await registry.shutdown()
    with pytest.raises(RuntimeError):
        registry.claim("b")
