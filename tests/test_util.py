import re

from wizlight_protocol.util import generate_phone_mac, normalize_mac, select_source_ip


class TestSelectSourceIp:
    def test_prefers_same_subnet(self):
        candidates = ["10.0.0.5", "192.168.1.20", "192.168.7.3"]
        assert select_source_ip("192.168.1.57", candidates) == "192.168.1.20"
        assert select_source_ip("192.168.7.200", candidates) == "192.168.7.3"

    def test_falls_back_to_first_non_loopback(self):
        assert select_source_ip("172.16.0.9", ["127.0.0.1", "10.0.0.5", "192.168.1.20"]) == "10.0.0.5"

    def test_no_usable_address(self):
        assert select_source_ip("192.168.1.57", ["127.0.0.1"]) is None
        assert select_source_ip("192.168.1.57", []) is None

    def test_unparseable_target(self):
        assert select_source_ip("bulb.local", ["10.0.0.5"]) == "10.0.0.5"


class TestMacs:
    def test_generate_phone_mac(self):
        mac = generate_phone_mac()
        assert re.fullmatch(r"[0-9a-f]{12}", mac)
        assert len({generate_phone_mac() for _ in range(10)}) > 1

    def test_normalize_mac(self):
        assert normalize_mac("A8:BB:50:AA:BB:CC") == "a8bb50aabbcc"
        assert normalize_mac("a8-bb-50-aa-bb-cc") == "a8bb50aabbcc"
        assert normalize_mac("a8bb50aabbcc") == "a8bb50aabbcc"
