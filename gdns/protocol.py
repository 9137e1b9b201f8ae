# geodnscache
# A geographically-aware caching DNS proxy
# Copyright (c) 2025 ninjamar

# MIT License

# Copyright (c) 2025 ninjamar

# Permission is hereby granted, free of charge, to any person obtaining a copy
# of this software and associated documentation files (the "Software"), to deal
# in the Software without restriction, including without limitation the rights
# to use, copy, modify, merge, publish, distribute, sublicense, and/or sell
# copies of the Software, and to permit persons to whom the Software is
# furnished to do so, subject to the following conditions:

# The above copyright notice and this permission notice shall be included in all
# copies or substantial portions of the Software.

# THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND, EXPRESS OR
# IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY,
# FITNESS FOR A PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE
# AUTHORS OR COPYRIGHT HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER
# LIABILITY, WHETHER IN AN ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM,
# OUT OF OR IN CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN THE
# SOFTWARE.
"""
=============
gdns.protocol
=============

This module implements the parts of RFC1035
(https://www.rfc-editor.org/rfc/rfc1035) the proxy touches: the header, the
question section and the answer section. Authority and additional sections
of an incoming message are skipped.

Headers, Questions, and Answers
===============================
These are all represented by the corresponding dataclass.

>>> DNSHeader(**fields)
>>> DNSQuestion(**fields)
>>> DNSAnswer(**fields)

Note that `id`, `class`, and `type` are represented by `id_`, `class_`, and
`type_`. `rdata` is kept encoded. Names inside the rdata of CNAME, NS, PTR,
DNAME, MX, SOA and SRV records are expanded when unpacking, so a record can be
moved into another message without dangling compression pointers.

Packing/Unpacking
=================

>>> DNSQuery(DNSHeader(id_=1), [DNSQuestion(decoded_name="example.com")]).pack()
b"a compressed buffer"
>>> unpack_all(b"a compressed buffer")
DNSQuery(header=DNSHeader(...), questions=[DNSQuestion(...)], answers=[])

A single resource record can be packed on its own, without compression. This
is the form the answer cache stores.

>>> pack_record(answer)
b"an uncompressed record"
>>> unpack_record(b"an uncompressed record")
DNSAnswer(...)
"""

import dataclasses
import functools
import socket
import struct
from enum import IntEnum


class RTypes(IntEnum):
    A = 1
    NS = 2
    CNAME = 5
    SOA = 6
    PTR = 12
    MX = 15
    TXT = 16
    AAAA = 28
    SRV = 33
    DNAME = 39
    ANY = 255


class RClasses(IntEnum):
    IN = 1
    CH = 3
    HS = 4
    ANY = 255


# Record types whose rdata is exactly one domain name
_NAME_RDATA = {RTypes.CNAME, RTypes.NS, RTypes.PTR, RTypes.DNAME}


class DNSDecodeError(Exception):
    """A buffer could not be decoded as a DNS message."""

    pass


class DNSDecodeLoopError(DNSDecodeError):
    """An exception if a loop is encountered while decoding a DNS name."""

    pass


def parse_rtype(value: str | int) -> int:
    """Turn a record type given as a name ("AAAA") or number into a number."""
    if isinstance(value, int):
        return value
    if value.isdigit():
        return int(value)
    try:
        return RTypes[value.upper()]
    except KeyError:
        raise ValueError(f"Unknown record type: {value}") from None


@functools.lru_cache(maxsize=512)
def encode_name_uncompressed(name: str) -> bytes:
    """Encode a DNS name without using compression.

    Args:
        name: The name to encode.

    Raises:
        ValueError: A label is longer than 63 bytes.

    Returns:
        The encoded DNS name.
    """
    name = name.rstrip(".")
    if not name:
        return b"\x00"

    encoded = []
    for label in name.split("."):
        raw = label.encode("ascii")
        if not 0 < len(raw) < 64:
            raise ValueError(f"Invalid label length in {name!r}")
        encoded.append(bytes([len(raw)]) + raw)
    return b"".join(encoded) + b"\x00"


def decode_name(buf: bytes, start_idx: int) -> tuple[str, int]:
    """Decode a possibly compressed DNS name from a position in a buffer.

    Args:
        buf: The buffer containing the DNS name.
        start_idx: Starting index of the DNS name.

    Raises:
        DNSDecodeLoopError: If the compression pointers form a loop.
        DNSDecodeError: If the name runs past the end of the buffer.

    Returns:
        Decoded DNS name and the index right after it.
    """
    labels = []
    idx = start_idx
    # Where parsing continues once a pointer has been followed
    end_idx = None

    # Prevent of going into a loop
    visited = set()

    while True:
        if idx in visited:
            raise DNSDecodeLoopError("Unable to decode domain: loop detected.")
        visited.add(idx)

        if idx >= len(buf):
            raise DNSDecodeError("Name runs past the end of the buffer")

        # Length of section
        length = buf[idx]
        # Null terminator
        if length == 0:
            idx += 1
            break
        # Pointer
        elif length & 0xC0 == 0xC0:
            if idx + 2 > len(buf):
                raise DNSDecodeError("Truncated compression pointer")
            pointer = struct.unpack("!H", buf[idx : idx + 2])[0] & 0x3FFF
            if end_idx is None:
                end_idx = idx + 2
            idx = pointer
        elif length & 0xC0:
            raise DNSDecodeError(f"Unsupported label type {length:#x}")
        else:
            label = buf[idx + 1 : idx + 1 + length]
            if len(label) != length:
                raise DNSDecodeError("Label runs past the end of the buffer")
            # Names are kept dotted, so such a label can't be told apart
            if b"." in label:
                raise DNSDecodeError("Label contains a dot")
            try:
                labels.append(label.decode("ascii"))
            except UnicodeDecodeError as e:
                raise DNSDecodeError("Label is not ASCII") from e
            idx += 1 + length

    return ".".join(labels), idx if end_idx is None else end_idx


def _expand_rdata(buf: bytes, type_: int, start: int, rdlength: int) -> bytes:
    """Rewrite rdata so any names in it are uncompressed."""
    end = start + rdlength
    rdata = buf[start:end]

    if type_ in _NAME_RDATA:
        name, _ = decode_name(buf, start)
        return encode_name_uncompressed(name)
    if type_ == RTypes.MX:
        name, _ = decode_name(buf, start + 2)
        return rdata[:2] + encode_name_uncompressed(name)
    if type_ == RTypes.SRV:
        name, _ = decode_name(buf, start + 6)
        return rdata[:6] + encode_name_uncompressed(name)
    if type_ == RTypes.SOA:
        mname, idx = decode_name(buf, start)
        rname, idx = decode_name(buf, idx)
        if idx + 20 > end:
            raise DNSDecodeError("Truncated SOA record")
        return (
            encode_name_uncompressed(mname)
            + encode_name_uncompressed(rname)
            + buf[idx : idx + 20]
        )
    return rdata


@dataclasses.dataclass(unsafe_hash=True)
class DNSHeader:
    """Dataclass to store a DNS header."""

    # https://datatracker.ietf.org/doc/html/rfc1035#section-4.1.1
    id_: int = 0
    qr: int = 0
    opcode: int = 0
    aa: int = 0
    tc: int = 0
    rd: int = 0
    ra: int = 0
    z: int = 0
    rcode: int = 0
    qdcount: int = 0
    ancount: int = 0
    nscount: int = 0
    arcount: int = 0

    def pack(self) -> bytes:
        """Pack the DNS header into bytes.

        Returns:
            The packed DNS header.
        """
        flags = (
            (self.qr << 15)  # QR: 1 bit at bit 15
            | (self.opcode << 11)  # OPCODE: 4 bits at bits 11-14
            | (self.aa << 10)  # AA: 1 bit at bit 10
            | (self.tc << 9)  # TC: 1 bit at bit 9
            | (self.rd << 8)  # RD: 1 bit at bit 8
            | (self.ra << 7)  # RA: 1 bit at bit 7
            | (self.z << 4)  # Z: 3 bits at bits 4-6
            | (self.rcode)  # RCODE: 4 bits at bits 0-3
        )

        return struct.pack(
            "!HHHHHH",
            self.id_,
            flags,
            self.qdcount,
            self.ancount,
            self.nscount,
            self.arcount,
        )

    @classmethod
    def from_buffer(cls, buf: bytes) -> "DNSHeader":
        """Create a DNSHeader instance using data stored in a buffer.

        Args:
            buf: The buffer containing a DNS header.

        Raises:
            DNSDecodeError: The buffer is shorter than a header.

        Returns:
            The DNSHeader instance.
        """
        if len(buf) < 12:
            raise DNSDecodeError("Buffer is shorter than a DNS header")

        id_, flags, qdcount, ancount, nscount, arcount = struct.unpack(
            "!HHHHHH", buf[:12]
        )

        return cls(
            id_=id_,
            qr=(flags >> 15) & 0x1,
            opcode=(flags >> 11) & 0xF,
            aa=(flags >> 10) & 0x1,
            tc=(flags >> 9) & 0x1,
            rd=(flags >> 8) & 0x1,
            ra=(flags >> 7) & 0x1,
            z=(flags >> 4) & 0x7,
            rcode=flags & 0xF,
            qdcount=qdcount,
            ancount=ancount,
            nscount=nscount,
            arcount=arcount,
        )


@dataclasses.dataclass(unsafe_hash=True)
class DNSQuestion:
    """Dataclass to store a DNS question."""

    decoded_name: str = ""

    # https://datatracker.ietf.org/doc/html/rfc1035#section-4.1.2
    type_: int = RTypes.A
    class_: int = RClasses.IN

    @property
    def key(self) -> tuple[int, int, str]:
        """The (class, type, name) triple identifying this question."""
        return (int(self.class_), int(self.type_), self.decoded_name.rstrip(".").lower())

    def pack(self, encoded_name: bytes) -> bytes:
        """Pack the DNS question into bytes.

        Args:
            encoded_name: The encoded form of decoded_name.

        Returns:
            The packed DNS question.
        """
        # Require an encoded name, since compression is handled elsewhere
        return encoded_name + struct.pack("!HH", self.type_, self.class_)


@dataclasses.dataclass(unsafe_hash=True)
class DNSAnswer:
    """Dataclass to store a DNS resource record."""

    decoded_name: str = ""

    # https://datatracker.ietf.org/doc/html/rfc1035#section-4.1.3
    type_: int = RTypes.A
    class_: int = RClasses.IN
    ttl: int = 0
    rdata: bytes = b""

    @property
    def rdlength(self) -> int:
        return len(self.rdata)

    def pack(self, encoded_name: bytes) -> bytes:
        """Pack the DNS answer.

        Args:
            encoded_name: The encoded form of decoded_name.

        Returns:
            The packed DNS answer.
        """
        return (
            encoded_name
            + struct.pack(
                "!HHIH",
                self.type_,
                self.class_,
                self.ttl,
                self.rdlength,
            )
            + self.rdata
        )


@dataclasses.dataclass
class DNSQuery:
    """A whole DNS message: header, questions and answers."""

    header: DNSHeader = dataclasses.field(default_factory=DNSHeader)
    questions: list[DNSQuestion] = dataclasses.field(default_factory=list)
    answers: list[DNSAnswer] = dataclasses.field(default_factory=list)

    def pack(self) -> bytes:
        """Pack the message with name compression. The counts in the header
        are taken from the sections."""
        header = dataclasses.replace(
            self.header,
            qdcount=len(self.questions),
            ancount=len(self.answers),
            nscount=0,
            arcount=0,
        )
        return pack_all_compressed(header, self.questions, self.answers)


def _compress(name: str, response: bytes, name_offset_map: dict[str, int]) -> bytes:
    # Names are case-insensitive, but the first spelling is kept on the wire
    key = name.rstrip(".").lower()
    if key and key in name_offset_map:
        # Starting pointer + offset of name
        return struct.pack("!H", 0xC000 | name_offset_map[key])

    # Pointers can only address the first 16K of the message
    if key and len(response) < 0x3FFF:
        name_offset_map[key] = len(response)
    return encode_name_uncompressed(name)


def pack_all_compressed(
    header: DNSHeader,
    questions: list[DNSQuestion] | None = None,
    answers: list[DNSAnswer] | None = None,
) -> bytes:
    """Pack a DNS header, DNS questions, and DNS answers, with compression.

    Args:
        header: The DNSHeader to pack.
        questions: Multiple DNS questions to pack. Defaults to None.
        answers: Multiple DNS answers to pack. Defaults to None.

    Returns:
        The packed DNS header, DNS questions, and DNS answers, with compression.
    """
    response = header.pack()
    # Store pointer locations
    name_offset_map: dict[str, int] = {}

    for question in questions or []:
        response += question.pack(
            _compress(question.decoded_name, response, name_offset_map)
        )

    for answer in answers or []:
        response += answer.pack(
            _compress(answer.decoded_name, response, name_offset_map)
        )

    return response


def _unpack_record(buf: bytes, idx: int) -> tuple[DNSAnswer, int]:
    decoded_name, idx = decode_name(buf, idx)

    if idx + 10 > len(buf):
        raise DNSDecodeError("Truncated resource record")
    type_, class_, ttl, rdlength = struct.unpack("!HHIH", buf[idx : idx + 10])
    idx += 10

    if idx + rdlength > len(buf):
        raise DNSDecodeError("Resource record data runs past the end of the buffer")
    rdata = _expand_rdata(buf, type_, idx, rdlength)
    idx += rdlength

    return (
        DNSAnswer(
            decoded_name=decoded_name,
            type_=type_,
            class_=class_,
            ttl=ttl,
            rdata=rdata,
        ),
        idx,
    )


def unpack_all(buf: bytes) -> DNSQuery:
    """Unpack a buffer into a DNS header, DNS questions, and DNS answers.

    Args:
        buf: Buffer containing a DNS message.

    Raises:
        DNSDecodeError: The buffer is not a valid DNS message.

    Returns:
        The message. Authority and additional records are not kept.
    """
    header = DNSHeader.from_buffer(buf)

    # Start after the header
    idx = 12

    try:
        questions = []
        for _ in range(header.qdcount):
            decoded_name, idx = decode_name(buf, idx)

            if idx + 4 > len(buf):
                raise DNSDecodeError("Truncated question")
            type_, class_ = struct.unpack("!HH", buf[idx : idx + 4])
            idx += 4

            questions.append(
                DNSQuestion(decoded_name=decoded_name, type_=type_, class_=class_)
            )

        answers = []
        for _ in range(header.ancount):
            answer, idx = _unpack_record(buf, idx)
            answers.append(answer)
    except (struct.error, IndexError, ValueError) as e:
        raise DNSDecodeError(str(e)) from e

    return DNSQuery(header=header, questions=questions, answers=answers)


def pack_record(answer: DNSAnswer) -> bytes:
    """Pack a single resource record without compression."""
    return answer.pack(encode_name_uncompressed(answer.decoded_name))


def unpack_record(buf: bytes) -> DNSAnswer:
    """Unpack a single resource record packed by `pack_record`.

    Raises:
        DNSDecodeError: The buffer is not exactly one resource record.
    """
    answer, idx = _unpack_record(buf, 0)
    if idx != len(buf):
        raise DNSDecodeError("Trailing data after resource record")
    return answer


def format_rdata(answer: DNSAnswer) -> str:
    """Human readable form of a record's data, for logs and the CLI."""
    try:
        if answer.type_ == RTypes.A and answer.rdlength == 4:
            return socket.inet_ntoa(answer.rdata)
        if answer.type_ == RTypes.AAAA and answer.rdlength == 16:
            return socket.inet_ntop(socket.AF_INET6, answer.rdata)
        if answer.type_ in _NAME_RDATA:
            return decode_name(answer.rdata, 0)[0]
        if answer.type_ == RTypes.MX:
            preference = struct.unpack("!H", answer.rdata[:2])[0]
            return f"{preference} {decode_name(answer.rdata, 2)[0]}"
    except (DNSDecodeError, OSError, struct.error):
        pass
    return answer.rdata.hex()
