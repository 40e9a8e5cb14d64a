"""Tests for azext_mate.host.channel: scoped listener registration."""

import pytest

from azext_mate.deploy.models import HostOutput
from azext_mate.host.channel import HostChannel


class TestHostChannel:

    def test_listen_delivers_and_detaches(self):
        channel = HostChannel()
        seen = []
        with channel.listen(seen.append):
            assert channel.listener_count == 1
            channel.emit("hello", "stdout")
        channel.emit("ignored", "stdout")

        assert [e.output for e in seen] == ["hello"]
        assert channel.listener_count == 0

    def test_listener_detached_when_operation_raises(self):
        channel = HostChannel()
        with pytest.raises(ValueError):
            with channel.listen(lambda e: None):
                raise ValueError("operation failed")
        assert channel.listener_count == 0

    def test_publish_fans_out_in_registration_order(self):
        channel = HostChannel()
        order = []
        with channel.listen(lambda e: order.append(("first", e.kind))):
            with channel.listen(lambda e: order.append(("second", e.kind))):
                channel.publish(HostOutput(output="x", kind="error"))

        assert order == [("first", "error"), ("second", "error")]

    def test_emit_defaults_to_stdout(self):
        channel = HostChannel()
        seen = []
        with channel.listen(seen.append):
            channel.emit("line")
        assert seen[0].kind == "stdout"
