"""Tests for template materialization."""
import json
import threading

import pytest

from app.core.constants import ECOSYSTEM_FILENAME, ENV_FILENAME
from app.services.provisioner import (
    ProvisioningCancelled,
    TemplateProvisioner,
    session_preview,
)

ENV = {"SESSION_ID": "SESSION-secret", "BOT_NAME": "MARK SUMO BOT", "PREFIX": "."}


def test_session_preview_truncates():
    secret = "S" * 50
    assert session_preview(secret, 30) == "S" * 30 + "..."
    assert session_preview("short", 30) == "short..."


def test_provision_copies_template_without_sensitive_files(provisioner):
    dest = provisioner.provision("bot-1", ENV)

    assert dest == provisioner.instance_dir("bot-1")
    assert (dest / "index.js").read_text() == "console.log('bot');"
    assert (dest / "mayel" / "plugins" / "ping.js").exists()

    # Folders survive, their contents do not
    assert (dest / "mayel" / "session").is_dir()
    assert list((dest / "mayel" / "session").iterdir()) == []
    assert (dest / "mayel" / "temp").is_dir()
    assert list((dest / "mayel" / "temp").iterdir()) == []
    assert not (dest / "store.db").exists()


def test_provision_links_shared_dependencies(provisioner, bot_template):
    dest = provisioner.provision("bot-1", ENV)

    node_modules = dest / "node_modules"
    assert node_modules.is_symlink()
    assert node_modules.resolve() == (bot_template / "node_modules").resolve()
    assert (node_modules / "dep" / "index.js").exists()


def test_provision_without_shared_dependencies(tmp_path, bot_template):
    (bot_template / "node_modules" / "dep" / "index.js").unlink()
    (bot_template / "node_modules" / "dep").rmdir()
    (bot_template / "node_modules").rmdir()
    provisioner = TemplateProvisioner(str(bot_template), str(tmp_path / "bots"))

    dest = provisioner.provision("bot-1", ENV)

    assert not (dest / "node_modules").exists()


def test_provision_writes_env_and_ecosystem(provisioner):
    dest = provisioner.provision("bot-1", ENV)

    env_lines = (dest / ENV_FILENAME).read_text().splitlines()
    assert env_lines == ["SESSION_ID=SESSION-secret", "BOT_NAME=MARK SUMO BOT", "PREFIX=."]

    ecosystem = (dest / ECOSYSTEM_FILENAME).read_text()
    assert ecosystem.startswith("module.exports = ")
    assert ecosystem.endswith(";")
    config = json.loads(ecosystem[len("module.exports = "):-1])
    app = config["apps"][0]
    assert app["name"] == "bot-1"
    assert app["script"] == "index.js"
    assert app["cwd"] == str(dest)
    assert app["env"] == ENV


def test_instances_are_isolated(provisioner):
    first = provisioner.provision("bot-1", {**ENV, "SESSION_ID": "one"})
    second = provisioner.provision("bot-2", {**ENV, "SESSION_ID": "two"})

    assert first != second
    assert "SESSION_ID=one" in (first / ENV_FILENAME).read_text()
    assert "SESSION_ID=two" in (second / ENV_FILENAME).read_text()


def test_provision_missing_template(tmp_path):
    provisioner = TemplateProvisioner(str(tmp_path / "missing"), str(tmp_path / "bots"))

    with pytest.raises(FileNotFoundError):
        provisioner.provision("bot-1", ENV)

    assert not provisioner.instance_dir("bot-1").exists()


def test_provision_removes_partial_tree_on_failure(provisioner, monkeypatch):
    def _fail(*args, **kwargs):
        raise OSError("disk full")

    monkeypatch.setattr(provisioner, "write_environment", _fail)

    with pytest.raises(OSError):
        provisioner.provision("bot-1", ENV)

    assert not provisioner.instance_dir("bot-1").exists()


def test_cancelled_provision_leaves_no_tree(provisioner):
    cancel = threading.Event()
    cancel.set()

    with pytest.raises(ProvisioningCancelled):
        provisioner.provision("bot-1", ENV, cancel)

    assert not provisioner.instance_dir("bot-1").exists()


def test_cancel_between_steps_removes_copied_tree(provisioner, monkeypatch):
    cancel = threading.Event()
    link = provisioner.link_shared_dependencies

    def link_then_cancel(dest_path):
        linked = link(dest_path)
        cancel.set()
        return linked

    monkeypatch.setattr(provisioner, "link_shared_dependencies", link_then_cancel)

    with pytest.raises(ProvisioningCancelled):
        provisioner.provision("bot-1", ENV, cancel)

    assert not provisioner.instance_dir("bot-1").exists()
    assert (provisioner.template_dir / "node_modules" / "dep" / "index.js").exists()

def test_provision_refuses_existing_directory(provisioner):
    provisioner.provision("bot-1", ENV)

    with pytest.raises(FileExistsError):
        provisioner.provision("bot-1", ENV)

    assert (provisioner.instance_dir("bot-1") / ENV_FILENAME).exists()


def test_remove_is_best_effort(provisioner):
    provisioner.provision("bot-1", ENV)

    provisioner.remove("bot-1")
    provisioner.remove("bot-1")

    assert not provisioner.instance_dir("bot-1").exists()
    # The shared template is untouched by removing an instance
    assert (provisioner.template_dir / "node_modules" / "dep" / "index.js").exists()
