import pytest

from nodepilot.models import NodeDescriptor
from nodepilot.parsers import load_nodes_file, parse_links, parse_node_uri, parse_vmess_uri

# JSON: {"v": "2", "ps": "test-node", "add": "test.server.com", "port": "443", "id": "a-uuid-goes-here", "aid": "64", "net": "ws", "type": "none", "host": "test.server.com", "path": "/", "tls": "tls", "sni": "test.server.com"}
VMESS_LINK = "vmess://eyJ2IjogIjIiLCAicHMiOiAidGVzdC1ub2RlIiwgImFkZCI6ICJ0ZXN0LnNlcnZlci5jb20iLCAicG9ydCI6ICI0NDMiLCAiaWQiOiAiYS11dWlkLWdvZXMtaGVyZSIsICJhaWQiOiAiNjQiLCAibmV0IjogIndzIiwgInR5cGUiOiAibm9uZSIsICJob3N0IjogInRlc3Quc2VydmVyLmNvbSIsICJwYXRoIjogIi8iLCAidGxzIjogInRscyIsICJzbmkiOiAidGVzdC5zZXJ2ZXIuY29tIn0="


def test_parse_vmess_uri_valid():
    result = parse_vmess_uri(VMESS_LINK)

    assert result is not None
    assert result.address == "test.server.com:443"
    assert result.name == "test-node"
    assert result.host == "test.server.com"
    assert result.split_address() == ("test.server.com", 443)
    assert len(result.id) == 16


def test_parse_vmess_uri_invalid():
    invalid_link = "vmess://invalid-base64"
    assert parse_vmess_uri(invalid_link) is None

    not_vmess_link = "http://google.com"
    assert parse_vmess_uri(not_vmess_link) is None


@pytest.mark.parametrize(
    "link, address, name",
    [
        ("vless://uuid@example.com:443?security=tls#My%20Node", "example.com:443", "My Node"),
        ("trojan://secret@[2001:db8::1]:8443#v6", "[2001:db8::1]:8443", "v6"),
        ("ss://YWVzLTI1Ni1nY206cGFzcw@1.2.3.4:8388", "1.2.3.4:8388", None),
        ("socks5://10.0.0.2:1080", "10.0.0.2:1080", None),
        ("203.0.113.7:3128", "203.0.113.7:3128", None),
    ],
)
def test_parse_node_uri(link, address, name):
    node = parse_node_uri(link)
    assert node is not None
    assert node.address == address
    assert node.name == name


@pytest.mark.parametrize(
    "link", ["", "# comment", "wireguard://key@host.example:51820", "vless://uuid@no-port.example", "just-text"]
)
def test_parse_node_uri_rejects(link):
    assert parse_node_uri(link) is None


def test_parse_links():
    links = [
        VMESS_LINK,
        "invalid-link",
        "",
        "vless://uuid@test.server.com:443#same-address",
        "trojan://pw@other.example:443",
    ]

    nodes = parse_links(links)

    assert len(nodes) == 2
    assert all(isinstance(n, NodeDescriptor) for n in nodes)
    assert nodes[0].name == "test-node"
    assert nodes[1].address == "other.example:443"


def test_ids_are_stable():
    assert parse_node_uri("1.2.3.4:80").id == parse_node_uri("http://1.2.3.4:80").id
    assert parse_node_uri("1.2.3.4:80").id != parse_node_uri("1.2.3.4:81").id


def test_load_nodes_file(tmp_path):
    path = tmp_path / "nodes.txt"
    path.write_text("# my nodes\n1.2.3.4:80\n\nsocks5://5.6.7.8:1080#proxy\n", encoding="utf-8")

    nodes = load_nodes_file(path)

    assert [n.address for n in nodes] == ["1.2.3.4:80", "5.6.7.8:1080"]
    assert load_nodes_file(tmp_path / "missing.txt") == []
