import pytest


@pytest.fixture
def anyio_backend():
    # The suite and the code under test use asyncio primitives directly.
    return "asyncio"
