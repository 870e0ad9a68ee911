"""
Tests for the file and copy modules.
"""

import hashlib
from pathlib import Path

import pytest

from minible.connections.base import RunResult
from minible.engine.scheduler import BecomeSettings
from minible.modules.builtin_copy import CopyModule
from minible.modules.builtin_file import FileModule, normalize_mode

from conftest import file_stat


class TestNormalizeMode:
    """Octal modes from YAML strings and integers."""

    @pytest.mark.parametrize("mode,expected", [
        ("0644", "0644"), ("644", "0644"), ("0o755", "0755"), ("2775", "2775"), (0o644, "0644"), (None, None),
    ])
    def test_valid(self, mode, expected):
        assert normalize_mode(mode) == expected

    @pytest.mark.parametrize("mode", ["u+rwx", "999", "rw-r--r--"])
    def test_invalid(self, mode):
        with pytest.raises(ValueError):
            normalize_mode(mode)


class TestFileModule:
    """file compares the path's current state before acting."""

    @pytest.mark.asyncio
    async def test_create_directory(self, context, connection):
        result = await FileModule({"path": "/var/www/demo", "state": "directory", "mode": "0755"}, context).run()
        assert result.changed
        assert connection.commands[0] == "mkdir -p /var/www/demo"
        assert connection.ran("chmod 0755 /var/www/demo")

    @pytest.mark.asyncio
    async def test_existing_directory_unchanged(self, context, connection):
        connection.files["/var/www/demo"] = file_stat(isdir=True, mode="0755")
        result = await FileModule({"path": "/var/www/demo", "state": "directory", "mode": "0755"}, context).run()
        assert not result.changed
        assert connection.commands == []

    @pytest.mark.asyncio
    async def test_existing_directory_wrong_mode(self, context, connection):
        connection.files["/var/www/demo"] = file_stat(isdir=True, mode="0700")
        result = await FileModule({"path": "/var/www/demo", "state": "directory", "mode": 0o755}, context).run()
        assert result.changed
        assert connection.commands == ["chmod 0755 /var/www/demo"]

    @pytest.mark.asyncio
    async def test_directory_over_file_fails(self, context, connection):
        connection.files["/var/www"] = file_stat()
        result = await FileModule({"path": "/var/www", "state": "directory"}, context).run()
        assert result.failed

    @pytest.mark.asyncio
    async def test_ownership(self, context, connection):
        connection.files["/var/www"] = file_stat(isdir=True)
        connection.respond("stat -c", RunResult(0, "root root\n", ""))
        result = await FileModule({"path": "/var/www", "state": "directory", "owner": "www-data"}, context).run()
        assert result.changed
        assert connection.commands[-1] == "chown www-data /var/www"

    @pytest.mark.asyncio
    async def test_ownership_already_correct(self, context, connection):
        connection.files["/var/www"] = file_stat(isdir=True)
        connection.respond("stat -c", RunResult(0, "www-data www-data\n", ""))
        module = FileModule({"path": "/var/www", "state": "directory", "owner": "www-data", "group": "www-data"}, context)
        result = await module.run()
        assert not result.changed

    @pytest.mark.asyncio
    async def test_absent(self, context, connection):
        connection.files["/tmp/old"] = file_stat()
        result = await FileModule({"path": "/tmp/old", "state": "absent"}, context).run()
        assert result.changed
        assert connection.commands == ["rm -rf /tmp/old"]

    @pytest.mark.asyncio
    async def test_absent_missing_path(self, context, connection):
        result = await FileModule({"path": "/tmp/old", "state": "absent"}, context).run()
        assert not result.changed
        assert connection.commands == []

    @pytest.mark.asyncio
    async def test_touch_always_changes(self, context, connection):
        connection.files["/tmp/stamp"] = file_stat()
        result = await FileModule({"path": "/tmp/stamp", "state": "touch"}, context).run()
        assert result.changed
        assert connection.commands == ["touch /tmp/stamp"]

    @pytest.mark.asyncio
    async def test_state_file_requires_existing_file(self, context, connection):
        result = await FileModule({"path": "/etc/missing.conf"}, context).run()
        assert result.failed
        assert "absent" in result.msg

    @pytest.mark.asyncio
    async def test_link_already_correct(self, context, connection):
        connection.files["/etc/nginx/sites-enabled/demo"] = file_stat(islink=True)
        connection.respond("readlink", RunResult(0, "/etc/nginx/sites-available/demo\n", ""))
        args = {"path": "/etc/nginx/sites-enabled/demo", "src": "/etc/nginx/sites-available/demo", "state": "link"}
        result = await FileModule(args, context).run()
        assert not result.changed

    @pytest.mark.asyncio
    async def test_link_created(self, context, connection):
        args = {"path": "/etc/nginx/sites-enabled/demo", "src": "/etc/nginx/sites-available/demo", "state": "link"}
        result = await FileModule(args, context).run()
        assert result.changed
        assert connection.commands == ["ln -sfn /etc/nginx/sites-available/demo /etc/nginx/sites-enabled/demo"]

    @pytest.mark.asyncio
    async def test_link_over_file_needs_force(self, context, connection):
        connection.files["/srv/current"] = file_stat()
        args = {"path": "/srv/current", "src": "/srv/v2", "state": "link"}
        assert (await FileModule(args, context).run()).failed

        result = await FileModule(dict(args, force=True), context).run()
        assert result.changed
        assert connection.commands[-1] == "rm -rf /srv/current && ln -sfn /srv/v2 /srv/current"

    @pytest.mark.asyncio
    async def test_check_mode(self, context, connection):
        context.check_mode = True
        result = await FileModule({"path": "/var/www/demo", "state": "directory", "mode": "0755"}, context).run()
        assert result.changed
        assert connection.commands == []

    def test_validation(self, context):
        assert FileModule({}, context).validate_args() is not None
        assert FileModule({"path": "/x", "state": "hard"}, context).validate_args() is not None
        assert FileModule({"path": "/x", "state": "link"}, context).validate_args() is not None
        assert FileModule({"path": "/x", "mode": "u+x"}, context).validate_args() is not None


PAGE = "<h1>Deployed by minible</h1>\n"
PAGE_SHA1 = hashlib.sha1(PAGE.encode()).hexdigest()


class TestCopyModule:
    """copy uploads only when the destination's checksum differs."""

    @pytest.mark.asyncio
    async def test_copy_content_to_new_file(self, context, connection):
        result = await CopyModule({"content": PAGE, "dest": "/var/www/html/index.html"}, context).run()
        assert result.changed
        assert connection.uploads == [(PAGE.encode(), "/var/www/html/index.html", None)]
        assert result.results["checksum"] == PAGE_SHA1

    @pytest.mark.asyncio
    async def test_identical_content_unchanged(self, context, connection):
        connection.files["/var/www/html/index.html"] = file_stat()
        connection.respond("sha1sum", RunResult(0, f"{PAGE_SHA1}  /var/www/html/index.html\n", ""))
        result = await CopyModule({"content": PAGE, "dest": "/var/www/html/index.html"}, context).run()
        assert not result.changed
        assert connection.uploads == []

    @pytest.mark.asyncio
    async def test_different_content_replaced(self, context, connection):
        connection.files["/var/www/html/index.html"] = file_stat()
        connection.respond("sha1sum", RunResult(0, "0000  /var/www/html/index.html\n", ""))
        result = await CopyModule({"content": PAGE, "dest": "/var/www/html/index.html"}, context).run()
        assert result.changed
        assert len(connection.uploads) == 1

    @pytest.mark.asyncio
    async def test_force_false_keeps_existing(self, context, connection):
        connection.files["/etc/motd"] = file_stat()
        connection.respond("sha1sum", RunResult(0, "0000  /etc/motd\n", ""))
        result = await CopyModule({"content": "hi", "dest": "/etc/motd", "force": False}, context).run()
        assert not result.changed

    @pytest.mark.asyncio
    async def test_mode_applied_after_upload(self, context, connection):
        await CopyModule({"content": PAGE, "dest": "/var/www/html/index.html", "mode": "0644"}, context).run()
        assert connection.commands[-1] == "chmod 0644 /var/www/html/index.html"

    @pytest.mark.asyncio
    async def test_src_found_under_playbook_files(self, context, connection, tmp_path: Path):
        (tmp_path / "files").mkdir()
        (tmp_path / "files" / "index.html").write_text(PAGE)
        connection.files["/var/www/html"] = file_stat(isdir=True)

        module = CopyModule({"src": "index.html", "dest": "/var/www/html"}, context, {"playbook_dir": str(tmp_path)})
        result = await module.run()
        assert result.changed
        assert connection.uploads[0][:2] == (PAGE.encode(), "/var/www/html/index.html")

    @pytest.mark.asyncio
    async def test_missing_src(self, context, connection, tmp_path: Path):
        module = CopyModule({"src": "nope.html", "dest": "/tmp/x"}, context, {"playbook_dir": str(tmp_path)})
        result = await module.run()
        assert result.failed
        assert "nope.html" in result.msg

    @pytest.mark.asyncio
    async def test_become_uploads_through_temp_file(self, context, connection):
        context.become = BecomeSettings(enabled=True)
        await CopyModule({"content": PAGE, "dest": "/var/www/html/index.html"}, context).run()
        remote_tmp = connection.uploads[0][1]
        assert remote_tmp.startswith("/tmp/.minible-")
        assert connection.commands[-1] == (
            f"sudo -n -u root /bin/sh -c 'mv {remote_tmp} /var/www/html/index.html'"
        )

    @pytest.mark.asyncio
    async def test_check_mode(self, context, connection):
        context.check_mode = True
        result = await CopyModule({"content": PAGE, "dest": "/var/www/html/index.html"}, context).run()
        assert result.changed
        assert connection.uploads == []

    @pytest.mark.asyncio
    async def test_dict_content_is_json(self, context, connection):
        await CopyModule({"content": {"port": 80}, "dest": "/etc/app.json"}, context).run()
        assert connection.uploads[0][0] == b'{\n    "port": 80\n}'

    def test_validation(self, context):
        assert CopyModule({"dest": "/x"}, context).validate_args() is not None
        assert CopyModule({"dest": "/x", "src": "a", "content": "b"}, context).validate_args() is not None
        assert CopyModule({"content": "b"}, context).validate_args() is not None
        assert CopyModule({"dest": "/x", "content": "b"}, context).validate_args() is None
