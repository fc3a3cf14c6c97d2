import pytest

from streamable_mcp import StreamableMCP


@pytest.fixture
def anyio_backend() -> str:
    """Return the backend name for anyio. Test only against asyncio. Trio is not supported."""
    return "asyncio"


@pytest.fixture
def mcp() -> StreamableMCP:
    return StreamableMCP(name="test-server", version="1.2.3")
