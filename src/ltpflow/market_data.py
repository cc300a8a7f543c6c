"""
Protobuf wire schema for market data messages published by the feed.

The message classes are built at import time from a FileDescriptorProto so
no generated _pb2 module has to be kept in sync with the .proto source:

    syntax = "proto3";
    package marketdata;

    message MarketData {
      optional double ltp = 1;
      optional int64 timestamp = 2;
    }

    message MarketDataBatch {
      repeated MarketData data = 1;
    }
"""

from google.protobuf import descriptor_pb2, descriptor_pool, message_factory
from google.protobuf.message import DecodeError

PACKAGE = "marketdata"

_FieldProto = descriptor_pb2.FieldDescriptorProto


def _add_optional_field(message_proto, name: str, number: int, field_type: int) -> None:
    """Add a proto3 `optional` scalar field (explicit presence via a synthetic oneof)."""
    oneof_index = len(message_proto.oneof_decl)
    message_proto.oneof_decl.add(name=f"_{name}")
    message_proto.field.add(
        name=name,
        number=number,
        type=field_type,
        label=_FieldProto.LABEL_OPTIONAL,
        oneof_index=oneof_index,
        proto3_optional=True,
    )


def _build_file_descriptor() -> descriptor_pb2.FileDescriptorProto:
    file_proto = descriptor_pb2.FileDescriptorProto(
        name="ltpflow/market_data.proto",
        package=PACKAGE,
        syntax="proto3",
    )

    market_data = file_proto.message_type.add(name="MarketData")
    _add_optional_field(market_data, "ltp", 1, _FieldProto.TYPE_DOUBLE)
    _add_optional_field(market_data, "timestamp", 2, _FieldProto.TYPE_INT64)

    batch = file_proto.message_type.add(name="MarketDataBatch")
    batch.field.add(
        name="data",
        number=1,
        type=_FieldProto.TYPE_MESSAGE,
        label=_FieldProto.LABEL_REPEATED,
        type_name=f".{PACKAGE}.MarketData",
    )
    return file_proto


# Private pool so the schema never clashes with other descriptors in the process
_pool = descriptor_pool.DescriptorPool()
_pool.AddSerializedFile(_build_file_descriptor().SerializeToString())

MarketData = message_factory.GetMessageClass(_pool.FindMessageTypeByName(f"{PACKAGE}.MarketData"))
MarketDataBatch = message_factory.GetMessageClass(_pool.FindMessageTypeByName(f"{PACKAGE}.MarketDataBatch"))

__all__ = ["MarketData", "MarketDataBatch", "DecodeError"]
