"""
SOCKS5 中继协议包

本包提供了 SOCKS5 协议（RFC 1928 子集）的定义和编解码实现，包括：
- 协议常量和应答码
- 问候、方法选择、请求和应答帧
- 错误类型

使用示例：
    from protocol import decode_greeting, encode_connect_reply, ConnectReply

    greeting, _ = decode_greeting(b'\\x05\\x01\\x00')
    frame = encode_connect_reply(ConnectReply.failure())
"""

from .core import (
    # 协议常量
    SOCKS_VERSION,
    METHOD_NO_AUTH,
    METHOD_NO_ACCEPTABLE,
    CMD_CONNECT,
    CMD_BIND,
    CMD_UDP_ASSOCIATE,
    ATYP_UNSPECIFIED,
    ATYP_IPV4,
    ATYP_DOMAIN,
    ATYP_IPV6,
    GREETING_HEADER_SIZE,
    REQUEST_HEADER_SIZE,
    FAILURE_REPLY_CODE,

    # 应答码
    ReplyCode,

    # 帧结构
    Greeting,
    MethodSelection,
    ConnectRequest,
    ConnectReply,

    # 编解码
    decode_greeting_header,
    decode_greeting,
    encode_greeting,
    encode_method_selection,
    decode_request_header,
    request_remainder_length,
    decode_connect_request,
    encode_connect_request,
    encode_connect_reply,

    # 错误
    Socks5Error,
    TransportError,
    ProtocolError,
    NoAcceptableMethod,
    UnsupportedAddressType,
    UnsupportedCommand,
    ResolutionError,
    DialError,
)
