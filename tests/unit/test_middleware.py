"""
tests/unit/test_middleware.py - InterceptorChain tests

Run with:
    pytest tests/unit/test_middleware.py -v
"""

from __future__ import annotations

import pytest

from aidk.middleware import OPERATIONS, Envelope, InterceptorChain


@pytest.fixture
def chain():
    return InterceptorChain()


async def final(args):
    return f"final({args})"


class TestInterceptorChain:
    @pytest.mark.asyncio
    async def test_empty_chain_calls_final(self, chain):
        assert await chain.run("tool.run", "x", Envelope("tool.run"), final) == "final(x)"

    @pytest.mark.asyncio
    async def test_registration_order_is_outermost_first(self, chain):
        order = []

        async def outer(args, envelope, next_):
            order.append("outer:in")
            result = await next_()
            order.append("outer:out")
            return result

        async def inner(args, envelope, next_):
            order.append("inner:in")
            result = await next_()
            order.append("inner:out")
            return result

        chain.use("model.generate", outer)
        chain.use("model.generate", inner)
        await chain.run("model.generate", "x", Envelope("model.generate"), final)
        assert order == ["outer:in", "inner:in", "inner:out", "outer:out"]

    @pytest.mark.asyncio
    async def test_next_with_new_args(self, chain):
        async def upper(args, envelope, next_):
            return await next_(args.upper())

        chain.use("tool.run", upper)
        assert await chain.run("tool.run", "abc", Envelope("tool.run"), final) == "final(ABC)"

    @pytest.mark.asyncio
    async def test_short_circuit(self, chain):
        async def cached(args, envelope, next_):
            return "from cache"

        chain.use("tool.run", cached)
        assert await chain.run("tool.run", "x", Envelope("tool.run"), final) == "from cache"

    @pytest.mark.asyncio
    async def test_operations_are_isolated(self, chain):
        async def boom(args, envelope, next_):
            raise AssertionError("should not run")

        chain.use("engine.execute", boom)
        assert await chain.run("tool.run", "x", Envelope("tool.run"), final) == "final(x)"

    @pytest.mark.asyncio
    async def test_remove(self, chain):
        async def tag(args, envelope, next_):
            return "tagged"

        remove = chain.use("tool.run", tag)
        assert chain.count("tool.run") == 1
        remove()
        assert chain.count("tool.run") == 0
        assert await chain.run("tool.run", "x", Envelope("tool.run"), final) == "final(x)"

    def test_unknown_operation_rejected(self, chain):
        with pytest.raises(ValueError):
            chain.use("engine.explode", final)

    def test_known_operations(self):
        assert set(OPERATIONS) == {
            "engine.execute", "engine.stream", "model.generate", "model.stream", "tool.run",
        }
