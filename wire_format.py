"""
Protobuf schemas for the Bebop pricing sockets.

Maker side (we publish): LevelsSchema{chain_id, msg_topic, msg_type,
msg=LevelMsg{levels=[LevelInfo], maker_address}}.
Taker side (we consume): BebopPricingUpdate{pairs=[PriceUpdate]}.

Price levels travel flattened as [price, size, price, size, ...].
Addresses travel as raw 20-byte values.
"""

from typing import Any, Dict, List, Optional, Sequence

from google.protobuf import descriptor_pb2, descriptor_pool, message_factory

from models import PriceData, PriceLevel

_F = descriptor_pb2.FieldDescriptorProto

PACKAGE = "bebop"


def _add_field(message: descriptor_pb2.DescriptorProto, name: str, number: int, field_type: int,
               repeated: bool = False, type_name: Optional[str] = None) -> None:
    field = message.field.add()
    field.name = name
    field.number = number
    field.type = field_type
    field.label = _F.LABEL_REPEATED if repeated else _F.LABEL_OPTIONAL
    if type_name:
        field.type_name = type_name


def _pricing_file() -> descriptor_pb2.FileDescriptorProto:
    file_proto = descriptor_pb2.FileDescriptorProto()
    file_proto.name = "bebop/pricing.proto"
    file_proto.package = PACKAGE
    file_proto.syntax = "proto3"

    level_info = file_proto.message_type.add()
    level_info.name = "LevelInfo"
    _add_field(level_info, "base_address", 1, _F.TYPE_BYTES)
    _add_field(level_info, "base_decimals", 2, _F.TYPE_UINT32)
    _add_field(level_info, "quote_address", 3, _F.TYPE_BYTES)
    _add_field(level_info, "quote_decimals", 4, _F.TYPE_UINT32)
    _add_field(level_info, "bids", 5, _F.TYPE_DOUBLE, repeated=True)
    _add_field(level_info, "asks", 6, _F.TYPE_DOUBLE, repeated=True)

    level_msg = file_proto.message_type.add()
    level_msg.name = "LevelMsg"
    _add_field(level_msg, "levels", 1, _F.TYPE_MESSAGE, repeated=True, type_name=".bebop.LevelInfo")
    _add_field(level_msg, "maker_address", 2, _F.TYPE_BYTES)

    levels_schema = file_proto.message_type.add()
    levels_schema.name = "LevelsSchema"
    _add_field(levels_schema, "chain_id", 1, _F.TYPE_UINT32)
    _add_field(levels_schema, "msg_topic", 2, _F.TYPE_STRING)
    _add_field(levels_schema, "msg_type", 3, _F.TYPE_STRING)
    _add_field(levels_schema, "msg", 4, _F.TYPE_MESSAGE, type_name=".bebop.LevelMsg")

    return file_proto


def _taker_pricing_file() -> descriptor_pb2.FileDescriptorProto:
    file_proto = descriptor_pb2.FileDescriptorProto()
    file_proto.name = "bebop/taker_pricing.proto"
    file_proto.package = PACKAGE
    file_proto.syntax = "proto3"

    price_update = file_proto.message_type.add()
    price_update.name = "PriceUpdate"
    _add_field(price_update, "base", 1, _F.TYPE_BYTES)
    _add_field(price_update, "quote", 2, _F.TYPE_BYTES)
    _add_field(price_update, "last_update_ts", 3, _F.TYPE_UINT64)
    _add_field(price_update, "bids", 4, _F.TYPE_FLOAT, repeated=True)
    _add_field(price_update, "asks", 5, _F.TYPE_FLOAT, repeated=True)

    pricing_update = file_proto.message_type.add()
    pricing_update.name = "BebopPricingUpdate"
    _add_field(pricing_update, "pairs", 1, _F.TYPE_MESSAGE, repeated=True, type_name=".bebop.PriceUpdate")

    return file_proto


_pool = descriptor_pool.DescriptorPool()
_pool.AddSerializedFile(_pricing_file().SerializeToString())
_pool.AddSerializedFile(_taker_pricing_file().SerializeToString())

LevelInfo = message_factory.GetMessageClass(_pool.FindMessageTypeByName("bebop.LevelInfo"))
LevelMsg = message_factory.GetMessageClass(_pool.FindMessageTypeByName("bebop.LevelMsg"))
LevelsSchema = message_factory.GetMessageClass(_pool.FindMessageTypeByName("bebop.LevelsSchema"))
PriceUpdate = message_factory.GetMessageClass(_pool.FindMessageTypeByName("bebop.PriceUpdate"))
BebopPricingUpdate = message_factory.GetMessageClass(_pool.FindMessageTypeByName("bebop.BebopPricingUpdate"))


# ============================================================================
# Helpers
# ============================================================================

def address_to_bytes(address: str) -> bytes:
    hex_part = address[2:] if address.lower().startswith("0x") else address
    return bytes.fromhex(hex_part)


def bytes_to_address(raw: bytes) -> Optional[str]:
    if not raw:
        return None
    return "0x" + raw.hex()


def flatten_levels(levels: Sequence[PriceLevel]) -> List[float]:
    flat: List[float] = []
    for price, size in levels:
        flat.extend((float(price), float(size)))
    return flat


def to_price_levels(flat: Sequence[float]) -> List[PriceLevel]:
    """[p1, q1, p2, q2, ...] -> [(p1, q1), (p2, q2), ...]; a trailing odd value is dropped"""
    return [(float(flat[i]), float(flat[i + 1])) for i in range(0, len(flat) - 1, 2)]


# ============================================================================
# Maker pricing (outbound)
# ============================================================================

def encode_levels(chain_id: int, maker_address: str, levels: List[Dict[str, Any]]) -> bytes:
    """
    Serialize a pricing update.

    Each level dict holds base_address, base_decimals, quote_address,
    quote_decimals, bids and asks (lists of (price, size)).
    """
    schema = LevelsSchema()
    schema.chain_id = chain_id
    schema.msg_topic = "pricing"
    schema.msg_type = "update"
    schema.msg.maker_address = address_to_bytes(maker_address)

    for level in levels:
        info = schema.msg.levels.add()
        info.base_address = address_to_bytes(level["base_address"])
        info.base_decimals = level["base_decimals"]
        info.quote_address = address_to_bytes(level["quote_address"])
        info.quote_decimals = level["quote_decimals"]
        info.bids.extend(flatten_levels(level["bids"]))
        info.asks.extend(flatten_levels(level["asks"]))

    return schema.SerializeToString()


def decode_levels(data: bytes) -> Dict[str, Any]:
    schema = LevelsSchema()
    schema.ParseFromString(data)
    return {
        "chain_id": schema.chain_id,
        "msg_topic": schema.msg_topic,
        "msg_type": schema.msg_type,
        "maker_address": bytes_to_address(schema.msg.maker_address),
        "levels": [
            {
                "base_address": bytes_to_address(info.base_address),
                "base_decimals": info.base_decimals,
                "quote_address": bytes_to_address(info.quote_address),
                "quote_decimals": info.quote_decimals,
                "bids": to_price_levels(list(info.bids)),
                "asks": to_price_levels(list(info.asks)),
            }
            for info in schema.msg.levels
        ],
    }


# ============================================================================
# Taker pricing (inbound)
# ============================================================================

def decode_pricing_update(data: bytes) -> List[PriceData]:
    """Records with an empty base or quote are skipped"""
    update = BebopPricingUpdate()
    update.ParseFromString(data)

    records = []
    for pair in update.pairs:
        base = bytes_to_address(pair.base)
        quote = bytes_to_address(pair.quote)
        if not base or not quote:
            continue
        records.append(PriceData(
            base=base,
            quote=quote,
            last_update_ts=int(pair.last_update_ts),
            bids=to_price_levels(list(pair.bids)),
            asks=to_price_levels(list(pair.asks)),
        ))
    return records


def encode_pricing_update(records: List[PriceData]) -> bytes:
    update = BebopPricingUpdate()
    for record in records:
        pair = update.pairs.add()
        pair.base = address_to_bytes(record.base)
        pair.quote = address_to_bytes(record.quote)
        pair.last_update_ts = int(record.last_update_ts)
        pair.bids.extend(flatten_levels(record.bids))
        pair.asks.extend(flatten_levels(record.asks))
    return update.SerializeToString()
