import pytest

from lea.lea_runtime import ProgramRunner


@pytest.fixture
def runner():
    return ProgramRunner()
