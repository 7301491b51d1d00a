import json
import logging
import os
import stat

import pytest

import common


# Fake capmc: nid 1 and 3 are reported off, nid 2 stays on, node_off on nid 3 fails
FAKE_CAPMC = """#!/bin/sh
case "$1" in
node_off)
    if [ "$3" = "3" ]; then
        echo "error: e_busy"
        exit 1
    fi
    echo '{"e":0,"err_msg":"Success"}'
    ;;
node_status)
    if [ "$3" = "2" ]; then
        echo '{"e":0,"err_msg":"","on":[2]}'
    else
        echo "{\\"e\\":0,\\"err_msg\\":\\"\\",\\"off\\":[$3]}"
    fi
    ;;
*)
    echo "unknown command $1" >&2
    exit 22
    ;;
esac
"""

# Fake scontrol: "show hostnames" with a duplicate and a node without NID
FAKE_SCONTROL = """#!/bin/sh
if [ "$3" = "nid[" ]; then
    echo "scontrol: error: Invalid hostlist: nid[" >&2
    exit 1
fi
printf 'nid00001\\nnid00002\\nnid00003\\nnid00001\\nlogin\\n'
"""


def write_script(path, content):
    path.write_text(content)
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IRUSR)
    return str(path)


@pytest.fixture
def fake_capmc(tmp_path):
    return write_script(tmp_path / 'capmc', FAKE_CAPMC)


@pytest.fixture
def slurm_bin(tmp_path):
    bin_dir = tmp_path / 'slurm' / 'bin'
    bin_dir.mkdir(parents=True)
    write_script(bin_dir / 'scontrol', FAKE_SCONTROL)
    return str(bin_dir) + os.sep


@pytest.fixture
def restore_logging():
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    for handler in list(root.handlers):
        # Only the console and file handlers added by common.get_logger
        if handler not in handlers and type(handler) in (logging.StreamHandler, logging.FileHandler):
            root.removeHandler(handler)
            handler.close()
    root.setLevel(level)


@pytest.fixture
def config_file(tmp_path, monkeypatch, restore_logging):
    """Write a config.json and point CAPMC_SUSPEND_CONFIG at it."""

    monkeypatch.setattr(common, "dir_path", str(tmp_path))

    def write(data):
        path = tmp_path / 'config.json'
        if isinstance(data, str):
            path.write_text(data)
        else:
            data.setdefault('LogFile', str(tmp_path / 'capmc_suspend.log'))
            path.write_text(json.dumps(data))
        monkeypatch.setenv('CAPMC_SUSPEND_CONFIG', str(path))
        return path

    return write
