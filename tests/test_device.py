"""
Tests for autocalib.device.
"""

from autocalib.device import direct_invoke


class TestDirectInvoke:
    def test_runs_inline(self):
        calls = []
        direct_invoke(lambda: calls.append(1))
        assert calls == [1]
