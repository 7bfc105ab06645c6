import pytest

import age_passgen


@pytest.fixture(autouse=True)
def reset_debug():
    """--debug flips a module global; keep it from leaking between tests"""
    yield
    age_passgen.DEBUG = False
