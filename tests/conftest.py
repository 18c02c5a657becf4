import textwrap

import pytest


@pytest.fixture
def write_compose(tmp_path):
    """Write a compose document below tmp_path and return its path as str."""
    def _write(relative_path, content):
        path = tmp_path / relative_path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(textwrap.dedent(content), encoding="utf-8")
        return str(path)
    return _write
