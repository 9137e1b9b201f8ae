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

import socket

import pytest

from gdns.protocol import (DNSAnswer, DNSDecodeError, DNSDecodeLoopError,
                           DNSHeader, DNSQuery, DNSQuestion, RTypes,
                           decode_name, encode_name_uncompressed,
                           format_rdata, pack_all_compressed, pack_record,
                           parse_rtype, unpack_all, unpack_record)


def test_dns_header():
    header = DNSHeader(
        id_=14240,
        qr=0,
        opcode=0,
        aa=0,
        tc=0,
        rd=1,
        ra=0,
        z=2,
        rcode=0,
        qdcount=1,
        ancount=0,
        nscount=0,
        arcount=1,
    )
    expected = b"7\xa0\x01 \x00\x01\x00\x00\x00\x00\x00\x01"

    assert header.pack() == expected
    assert DNSHeader.from_buffer(expected) == header


def test_dns_question():
    name = "example.com"
    assert (
        DNSQuestion(decoded_name=name, type_=1, class_=1).pack(
            encode_name_uncompressed(name)
        )
        == b"\x07example\x03com\x00\x00\x01\x00\x01"
    )


def test_dns_answer():
    name = "example.com"
    assert (
        DNSAnswer(
            decoded_name=name,
            type_=1,
            class_=1,
            ttl=60,
            rdata=b"\x7f\x00\x00\x01",
        ).pack(encode_name_uncompressed(name))
        == b"\x07example\x03com\x00\x00\x01\x00\x01\x00\x00\x00<\x00\x04\x7f\x00\x00\x01"
    )


def test_encode_root_and_trailing_dot():
    assert encode_name_uncompressed("") == b"\x00"
    assert encode_name_uncompressed(".") == b"\x00"
    assert encode_name_uncompressed("example.com.") == b"\x07example\x03com\x00"

    with pytest.raises(ValueError):
        encode_name_uncompressed("a" * 64 + ".com")


def test_pack_all_compressed():
    header = DNSHeader(id_=14240, rd=1, z=2, qdcount=2, ancount=2, arcount=1)
    question = DNSQuestion(decoded_name="example.com", type_=1, class_=1)
    answer = DNSAnswer(
        decoded_name="example.com", type_=1, class_=1, ttl=60, rdata=b"\x7f\x00\x00\x01"
    )
    assert pack_all_compressed(header, [question, question], [answer, answer]) == (
        b"7\xa0\x01 \x00\x02\x00\x02\x00\x00\x00\x01\x07example\x03com\x00\x00\x01"
        b"\x00\x01\xc0\x0c\x00\x01\x00\x01\xc0\x0c\x00\x01\x00\x01\x00\x00\x00<\x00"
        b"\x04\x7f\x00\x00\x01\xc0\x0c\x00\x01\x00\x01\x00\x00\x00<\x00\x04\x7f\x00"
        b"\x00\x01"
    )


def test_unpack_all():
    query = unpack_all(
        b"7\xa0\x01 \x00\x02\x00\x02\x00\x00\x00\x01\x07example\x03com\x00\x00\x01"
        b"\x00\x01\xc0\x0c\x00\x01\x00\x01\xc0\x0c\x00\x01\x00\x01\x00\x00\x00<\x00"
        b"\x04\x7f\x00\x00\x01\xc0\x0c\x00\x01\x00\x01\x00\x00\x00<\x00\x04\x7f\x00"
        b"\x00\x01"
    )
    assert query.header == DNSHeader(
        id_=14240, rd=1, z=2, qdcount=2, ancount=2, arcount=1
    )
    assert query.questions == [DNSQuestion(decoded_name="example.com")] * 2
    assert query.answers == [
        DNSAnswer(decoded_name="example.com", ttl=60, rdata=b"\x7f\x00\x00\x01")
    ] * 2


def test_dns_query_pack_sets_counts():
    query = DNSQuery(
        DNSHeader(id_=7, qdcount=9, ancount=9),
        [DNSQuestion(decoded_name="example.com")],
    )
    header = unpack_all(query.pack()).header
    assert header.id_ == 7
    assert header.qdcount == 1
    assert header.ancount == 0


def test_compressed_cname_rdata_is_expanded():
    # www.example.com CNAME example.com, with the target compressed
    # into a pointer at the question's "example.com"
    buf = (
        DNSHeader(id_=1, qr=1, qdcount=1, ancount=1).pack()
        + b"\x03www\x07example\x03com\x00\x00\x05\x00\x01"
        + b"\xc0\x0c\x00\x05\x00\x01\x00\x00\x00\x3c\x00\x02\xc0\x10"
    )
    answer = unpack_all(buf).answers[0]

    assert answer.decoded_name == "www.example.com"
    assert answer.rdata == b"\x07example\x03com\x00"
    assert format_rdata(answer) == "example.com"

    # The record can now be copied into another message
    assert unpack_record(pack_record(answer)) == answer


def test_mx_rdata_is_expanded():
    buf = (
        DNSHeader(id_=1, qr=1, qdcount=1, ancount=1).pack()
        + b"\x07example\x03com\x00\x00\x0f\x00\x01"
        + b"\xc0\x0c\x00\x0f\x00\x01\x00\x00\x00\x3c\x00\x09\x00\x0a\x04mail\xc0\x0c"
    )
    answer = unpack_all(buf).answers[0]
    assert answer.rdata == b"\x00\x0a\x04mail\x07example\x03com\x00"
    assert format_rdata(answer) == "10 mail.example.com"


def test_decode_loop():
    # A pointer that points at itself
    with pytest.raises(DNSDecodeLoopError):
        decode_name(b"\xc0\x00", 0)

    # Two pointers that point at each other
    with pytest.raises(DNSDecodeLoopError):
        decode_name(b"\xc0\x02\xc0\x00", 0)


@pytest.mark.parametrize(
    "buf",
    [
        b"",
        b"\x00\x01\x00",
        # One question, but no question section
        DNSHeader(id_=1, qdcount=1).pack(),
        # Name runs off the end
        DNSHeader(id_=1, qdcount=1).pack() + b"\x07exam",
        # Question without type and class
        DNSHeader(id_=1, qdcount=1).pack() + b"\x03com\x00\x00",
        # A dot inside a label
        DNSHeader(id_=1, qdcount=1).pack() + b"\x03a.b\x03com\x00\x00\x01\x00\x01",
        # Answer with rdlength past the end
        DNSHeader(id_=1, ancount=1).pack()
        + b"\x03com\x00\x00\x01\x00\x01\x00\x00\x00\x3c\x00\x04\x7f",
    ],
)
def test_malformed_buffers(buf):
    with pytest.raises(DNSDecodeError):
        unpack_all(buf)


def test_unpack_record_rejects_trailing_data():
    raw = pack_record(DNSAnswer(decoded_name="example.com", rdata=b"\x7f\x00\x00\x01"))
    with pytest.raises(DNSDecodeError):
        unpack_record(raw + b"\x00")


def test_format_rdata():
    a = DNSAnswer(decoded_name="example.com", rdata=socket.inet_aton("93.184.216.34"))
    aaaa = DNSAnswer(
        decoded_name="example.com",
        type_=RTypes.AAAA,
        rdata=socket.inet_pton(socket.AF_INET6, "2001:db8::1"),
    )
    txt = DNSAnswer(decoded_name="example.com", type_=RTypes.TXT, rdata=b"\x02hi")

    assert format_rdata(a) == "93.184.216.34"
    assert format_rdata(aaaa) == "2001:db8::1"
    assert format_rdata(txt) == "026869"


def test_parse_rtype():
    assert parse_rtype("aaaa") == RTypes.AAAA
    assert parse_rtype("15") == 15
    assert parse_rtype(16) == 16
    with pytest.raises(ValueError):
        parse_rtype("NOPE")


def test_question_key_ignores_case_and_trailing_dot():
    assert DNSQuestion(decoded_name="Example.COM.").key == (1, 1, "example.com")


def test_dotted_label_is_rejected():
    with pytest.raises(DNSDecodeError):
        decode_name(b"\x03a.b\x03com\x00", 0)
