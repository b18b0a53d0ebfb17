"""
Pytest configuration and shared fixtures.

The NBIS executables are replaced by small shell scripts written into
tmp_path, so tests go through the real subprocess code path:

- mindtct fails for sources whose content contains "bad", writes only a
  comment line for sources containing "blank", and otherwise writes a header
  plus N records. Deciding on content keeps working after uploads are
  renamed to <uuid>.wsq
- bozorth3 prints whatever score the test asks for
"""

import pytest
from pathlib import Path

from nbis_service import NBISConfig, NBISService


def mindtct_script(records: int = 35) -> str:
    return f'''if grep -qa bad "$2"; then
  echo "mindtct: cannot read $2" >&2
  exit 1
fi
out="$3.xyt"
echo "# fake mindtct output" > "$out"
if grep -qa blank "$2"; then
  exit 0
fi
i=0
while [ "$i" -lt {records} ]; do
  echo "$((i * 7)) $((i * 3)) $((i * 11 % 360)) 50" >> "$out"
  i=$((i + 1))
done
'''


def bozorth3_script(score: str = "52") -> str:
    return f'echo "{score}"\n'


@pytest.fixture
def make_tool(tmp_path):
    """Write an executable /bin/sh script and return its path"""
    def _make(name: str, body: str, executable: bool = True) -> str:
        path = tmp_path / "bin" / name
        path.parent.mkdir(exist_ok=True)
        path.write_text("#!/bin/sh\n" + body)
        if executable:
            path.chmod(0o755)
        return str(path)
    return _make


@pytest.fixture
def nbis_config(make_tool):
    return NBISConfig(
        mindtct=make_tool("mindtct", mindtct_script()),
        bozorth3=make_tool("bozorth3", bozorth3_script()),
        timeout=10.0,
    )


@pytest.fixture
def nbis(nbis_config):
    return NBISService(nbis_config)


@pytest.fixture
def work_dir(tmp_path) -> Path:
    path = tmp_path / "templates"
    path.mkdir()
    return path


@pytest.fixture
def make_wsq(work_dir):
    """Create a placeholder WSQ file whose content carries its name"""
    def _make(name: str) -> str:
        path = work_dir / name
        path.write_bytes(b"\xff\xa0fake-wsq:" + name.encode())
        return str(path)
    return _make
