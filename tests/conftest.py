import pytest
from scriptlet_runner.config import Settings


@pytest.fixture
def settings(tmp_path):
    return Settings(shell="/bin/sh", data_dir=tmp_path / "data")


@pytest.fixture
def write_script(tmp_path):
    # Writes an executable script under tmp_path and returns its absolute path.
    def _write(name, body, executable=True, directory=None):
        path = (directory or tmp_path / "scripts") / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(body)
        if executable:
            path.chmod(0o755)
        return str(path)

    return _write
