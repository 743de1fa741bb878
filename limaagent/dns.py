"""A small DNS server that answers from static hosts and the host resolver."""

from __future__ import annotations

import ipaddress
import logging
import os
import socket
import socketserver
import struct
import threading
import time
from dataclasses import dataclass, field
from typing import Optional, Protocol

import dns.exception
import dns.flags
import dns.message
import dns.name
import dns.opcode
import dns.query
import dns.rcode
import dns.rdata
import dns.rdataclass
import dns.rdatatype
import dns.resolver
import dns.rrset
from dns.rdtypes.ANY.TXT import TXT

log = logging.getLogger(__name__)

# Replies are truncated to this size so that `busybox nslookup` can parse them.
TRUNCATE_SIZE = 512
IPV6_RESPONSE_DELAY = 1.0
DEFAULT_FALLBACK_IPS = ("8.8.8.8", "1.1.1.1")
_UPSTREAM_PORT = 53
_UPSTREAM_TIMEOUT = 2.0
_TTL = 5


class Lookup(Protocol):
    """Name lookups used to answer queries that are not static."""

    def lookup_ip(self, name: str) -> list: ...

    def lookup_cname(self, name: str) -> str: ...

    def lookup_txt(self, name: str) -> list[str]: ...

    def lookup_ns(self, name: str) -> list[str]: ...

    def lookup_mx(self, name: str) -> list[tuple[str, int]]: ...

    def lookup_srv(self, name: str) -> list[tuple[str, int, int, int]]: ...


class SystemLookup:
    """Lookups through the operating system and the system resolver."""

    def lookup_ip(self, name: str) -> list:
        infos = socket.getaddrinfo(name, None, proto=socket.IPPROTO_TCP)
        result = []
        for info in infos:
            ip = ipaddress.ip_address(info[4][0].split("%")[0])
            if ip not in result:
                result.append(ip)
        return result

    def lookup_cname(self, name: str) -> str:
        try:
            answer = dns.resolver.resolve(name, "CNAME")
        except dns.resolver.NoAnswer:
            return name if name.endswith(".") else name + "."
        return answer[0].target.to_text()

    def lookup_txt(self, name: str) -> list[str]:
        answer = dns.resolver.resolve(name, "TXT")
        return [b"".join(r.strings).decode(errors="replace") for r in answer]

    def lookup_ns(self, name: str) -> list[str]:
        return [r.target.to_text() for r in dns.resolver.resolve(name, "NS")]

    def lookup_mx(self, name: str) -> list[tuple[str, int]]:
        answer = dns.resolver.resolve(name, "MX")
        return [(r.exchange.to_text(), r.preference) for r in answer]

    def lookup_srv(self, name: str) -> list[tuple[str, int, int, int]]:
        answer = dns.resolver.resolve(name, "SRV")
        return [(r.target.to_text(), r.port, r.priority, r.weight) for r in answer]


@dataclass
class HandlerOptions:
    ipv6: bool = False
    static_hosts: dict[str, str] = field(default_factory=dict)
    upstream_servers: list[str] = field(default_factory=list)
    truncate_reply: bool = False
    lookup: Optional[Lookup] = None
    ipv6_response_delay: float = IPV6_RESPONSE_DELAY


@dataclass
class ServerOptions:
    handler_options: HandlerOptions = field(default_factory=HandlerOptions)
    address: str = "127.0.0.1"
    tcp_port: int = 0
    udp_port: int = 0


def _canonical_name(name: str) -> str:
    name = name.lower()
    return name if name.endswith(".") else name + "."


def _servers_from_resolv_conf(path: str = "/etc/resolv.conf") -> list[str]:
    servers = []
    with open(path, encoding="utf-8") as stream:
        for line in stream:
            fields = line.split()
            if len(fields) >= 2 and fields[0] == "nameserver":
                servers.append(fields[1])
    return servers


def _valid_servers(ips: list[str]) -> list[str]:
    for ip in ips:
        ipaddress.ip_address(ip)
    return list(ips)


def chunkify(buffer: str, limit: int) -> list[str]:
    """Split a string into pieces of at most limit characters."""
    return [buffer[i:i + limit] for i in range(0, len(buffer), limit)]


def _truncate(reply: dns.message.Message, size: int) -> None:
    if len(reply.to_wire()) <= size:
        return
    while reply.answer and len(reply.to_wire()) > size:
        rrset = reply.answer[-1]
        if len(rrset) > 1:
            rrset.discard(list(rrset)[-1])
        else:
            reply.answer.pop()
    reply.flags |= dns.flags.TC


class Handler:
    """Answers DNS requests."""

    def __init__(self, options: HandlerOptions) -> None:
        if options.upstream_servers:
            try:
                servers = _valid_servers(options.upstream_servers)
            except ValueError as err:
                log.warning("failed to create a client config from: %s, falling back to %s: %s",
                            options.upstream_servers, DEFAULT_FALLBACK_IPS, err)
                servers = list(DEFAULT_FALLBACK_IPS)
        elif os.name == "nt":
            servers = list(DEFAULT_FALLBACK_IPS)
        else:
            try:
                servers = _servers_from_resolv_conf()
            except OSError as err:
                log.warning("failed to detect system DNS, falling back to %s: %s",
                            DEFAULT_FALLBACK_IPS, err)
                servers = list(DEFAULT_FALLBACK_IPS)
        self.servers = servers
        self.truncate = options.truncate_reply
        self.ipv6 = options.ipv6
        self.ipv6_response_delay = options.ipv6_response_delay
        self.lookup: Lookup = options.lookup or SystemLookup()
        self.cname_to_host: dict[str, str] = {}
        self.host_to_ip: dict[str, object] = {}
        for host, address in options.static_hosts.items():
            cname = _canonical_name(host)
            try:
                self.host_to_ip[cname] = ipaddress.ip_address(address)
            except ValueError:
                self.cname_to_host[cname] = _canonical_name(address)

    def lookup_cname_to_host(self, cname: str) -> str:
        """Follow static aliases, stopping at a cycle."""
        seen: set[str] = set()
        while cname not in seen and cname in self.cname_to_host:
            seen.add(cname)
            cname = self.cname_to_host[cname]
        return cname

    def serve_dns(self, request: dns.message.Message) -> dns.message.Message:
        """Return the reply to a request."""
        if request.opcode() == dns.opcode.QUERY:
            return self._handle_query(request)
        return self._handle_default(request)

    def _add(self, reply, name, rdclass, rdtype, rdata) -> None:
        rrset = reply.find_rrset(reply.answer, name, rdclass, rdtype, create=True)
        rrset.add(rdata, _TTL)

    def _handle_query(self, request: dns.message.Message) -> dns.message.Message:
        reply = dns.message.make_response(request)
        handled = False
        for q in request.question:
            qname = q.name.to_text()
            rdclass = q.rdclass
            qtype = q.rdtype
            try:
                if qtype == dns.rdatatype.AAAA and not self.ipv6:
                    # Some resolvers reuse the transaction ID for A and AAAA;
                    # answering AAAA late with NODATA avoids confusing them.
                    time.sleep(self.ipv6_response_delay)
                    reply.set_rcode(dns.rcode.NOERROR)
                    handled = True
                elif qtype in (dns.rdatatype.A, dns.rdatatype.AAAA):
                    cname = self.lookup_cname_to_host(qname)
                    if cname in self.host_to_ip:
                        addrs = [self.host_to_ip[cname]]
                    else:
                        addrs = self.lookup.lookup_ip(cname)
                    for ip in addrs:
                        ip = ipaddress.ip_address(ip)
                        if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped:
                            ip = ip.ipv4_mapped
                        is_v6 = isinstance(ip, ipaddress.IPv6Address)
                        if (qtype == dns.rdatatype.A) == is_v6:
                            continue
                        rdata = dns.rdata.from_text(rdclass, qtype, str(ip))
                        self._add(reply, q.name, rdclass, qtype, rdata)
                        handled = True
                elif qtype == dns.rdatatype.CNAME:
                    cname = self.lookup_cname_to_host(qname)
                    if cname not in self.host_to_ip:
                        cname = self.lookup.lookup_cname(cname)
                    if cname and cname != qname:
                        rdata = dns.rdata.from_text(rdclass, qtype, cname)
                        self._add(reply, q.name, rdclass, qtype, rdata)
                        handled = True
                elif qtype == dns.rdatatype.TXT:
                    for text in self.lookup.lookup_txt(qname):
                        # Long records are served as several strings (RFC 7208 3.3).
                        strings = [c.encode() for c in chunkify(text, 255)]
                        self._add(reply, q.name, rdclass, qtype, TXT(rdclass, qtype, strings))
                        handled = True
                elif qtype == dns.rdatatype.NS:
                    for host in self.lookup.lookup_ns(qname):
                        if host:
                            self._add(reply, q.name, rdclass, qtype,
                                      dns.rdata.from_text(rdclass, qtype, host))
                            handled = True
                elif qtype == dns.rdatatype.MX:
                    for host, pref in self.lookup.lookup_mx(qname):
                        if host:
                            self._add(reply, q.name, rdclass, qtype,
                                      dns.rdata.from_text(rdclass, qtype, f"{pref} {host}"))
                            handled = True
                elif qtype == dns.rdatatype.SRV:
                    for target, port, priority, weight in self.lookup.lookup_srv(qname):
                        text = f"{priority} {weight} {port} {target}"
                        self._add(reply, q.name, rdclass, qtype,
                                  dns.rdata.from_text(rdclass, qtype, text))
                        handled = True
            except (OSError, dns.exception.DNSException, ValueError) as err:
                log.debug("handleQuery lookup failed: %s", err)
                continue
        if handled:
            if self.truncate:
                _truncate(reply, TRUNCATE_SIZE)
            return reply
        return self._handle_default(request)

    def _handle_default(self, request: dns.message.Message) -> dns.message.Message:
        for query in (dns.query.udp, dns.query.tcp):
            for server in self.servers:
                try:
                    reply = query(request, server, timeout=_UPSTREAM_TIMEOUT, port=_UPSTREAM_PORT)
                except (OSError, dns.exception.DNSException) as err:
                    log.debug("handleDefault failed to query upstream %s: %s", server, err)
                    continue
                if self.truncate:
                    _truncate(reply, TRUNCATE_SIZE)
                return reply
        reply = dns.message.make_response(request)
        if self.truncate:
            _truncate(reply, TRUNCATE_SIZE)
        return reply


def _respond(handler: Handler, data: bytes) -> Optional[bytes]:
    try:
        request = dns.message.from_wire(data)
    except dns.exception.DNSException as err:
        log.debug("invalid DNS request: %s", err)
        return None
    return handler.serve_dns(request).to_wire()


class _UDPServer(socketserver.ThreadingUDPServer):
    daemon_threads = True
    allow_reuse_address = True


class _TCPServer(socketserver.ThreadingTCPServer):
    daemon_threads = True
    allow_reuse_address = True


def _make_udp(handler: Handler, addr: tuple[str, int]) -> _UDPServer:
    class _Req(socketserver.BaseRequestHandler):
        def handle(self) -> None:
            data, sock = self.request
            out = _respond(handler, data)
            if out is not None:
                sock.sendto(out, self.client_address)

    return _UDPServer(addr, _Req)


def _recv_exact(sock: socket.socket, n: int) -> Optional[bytes]:
    buf = b""
    while len(buf) < n:
        chunk = sock.recv(n - len(buf))
        if not chunk:
            return None
        buf += chunk
    return buf


def _make_tcp(handler: Handler, addr: tuple[str, int]) -> _TCPServer:
    class _Req(socketserver.BaseRequestHandler):
        def handle(self) -> None:
            while True:
                head = _recv_exact(self.request, 2)
                if head is None:
                    return
                data = _recv_exact(self.request, struct.unpack("!H", head)[0])
                if data is None:
                    return
                out = _respond(handler, data)
                if out is None:
                    return
                self.request.sendall(struct.pack("!H", len(out)) + out)

    return _TCPServer(addr, _Req)


class Server:
    """Running UDP and TCP DNS listeners."""

    def __init__(self) -> None:
        self.udp: Optional[socketserver.BaseServer] = None
        self.tcp: Optional[socketserver.BaseServer] = None

    def shutdown(self) -> None:
        for srv in (self.udp, self.tcp):
            if srv is not None:
                srv.shutdown()
                srv.server_close()


def _serve(srv: socketserver.BaseServer, network: str, addr) -> None:
    log.debug("Start %s DNS listening on: %s", network, addr)
    threading.Thread(target=srv.serve_forever, daemon=True).start()


def start(options: ServerOptions) -> Server:
    """Start listeners for each configured port."""
    server = Server()
    if options.udp_port > 0:
        # UDP replies are always truncated.
        opts = HandlerOptions(**{**options.handler_options.__dict__, "truncate_reply": True})
        addr = (options.address, options.udp_port)
        server.udp = _make_udp(Handler(opts), addr)
        _serve(server.udp, "udp", addr)
    if options.tcp_port > 0:
        addr = (options.address, options.tcp_port)
        server.tcp = _make_tcp(Handler(options.handler_options), addr)
        _serve(server.tcp, "tcp", addr)
    return server