import socket


def _get_open_port(kind: int, ip: str) -> int:
    with socket.socket(socket.AF_INET, kind) as sock:
        sock.bind((ip, 0))
        return sock.getsockname()[1]


def get_open_tcp_port(ip: str = "127.0.0.1") -> int:
    """Returns a TCP port that is free right now. Another process may take it later."""
    return _get_open_port(socket.SOCK_STREAM, ip)


def get_open_udp_port(ip: str = "127.0.0.1") -> int:
    """Returns a UDP port that is free right now. Another process may take it later."""
    return _get_open_port(socket.SOCK_DGRAM, ip)
