from __future__ import annotations

from pathlib import Path

import allure
import pytest

from bulkrun.channels import SshChannel, _client_args, _master_args, ssh_channel_factory
from bulkrun.errors import ChannelCreationError

pytestmark = [
    allure.epic("Bulk Engine"),
    allure.feature("Remote Channels"),
]


def test_master_args_tag_control_socket_and_options() -> None:
    args = _master_args(
        ssh_binary="ssh",
        control_path=Path("/tmp/ctl/bulkrun-3.sock"),
        target="admin@web1",
        connect_timeout_seconds=7,
        extra_options=("StrictHostKeyChecking=accept-new",),
    )

    assert args[:5] == ["ssh", "-M", "-N", "-S", "/tmp/ctl/bulkrun-3.sock"]
    assert "ConnectTimeout=7" in args
    assert "StrictHostKeyChecking=accept-new" in args
    assert args[-1] == "admin@web1"


def test_client_args_quote_remote_command() -> None:
    args = _client_args(
        ssh_binary="ssh",
        control_path=Path("/tmp/ctl/bulkrun-1.sock"),
        target="web1",
        command=["echo", "hello world"],
    )

    assert args[-3:] == ["web1", "--", "echo 'hello world'"]


def test_factory_tags_socket_with_session_id(tmp_path: Path) -> None:
    factory = ssh_channel_factory(tmp_path / "ctl")

    channel = factory("web1", 4)

    assert isinstance(channel, SshChannel)
    assert channel.control_path == tmp_path / "ctl" / "bulkrun-4.sock"
    assert channel.target == "web1"
    assert channel.session_id == 4


def test_open_with_missing_binary_raises_channel_creation_error(tmp_path: Path) -> None:
    channel = SshChannel(
        "web1",
        1,
        control_dir=tmp_path,
        ssh_binary=str(tmp_path / "no-such-ssh"),
    )

    with pytest.raises(ChannelCreationError, match="Failed to start ssh"):
        channel.open()
    channel.close()
