"""Tests for wire transports and result serialization."""

import socket

import numpy as np
import pytest

from framecall._internal.numpy_serializer import register_numpy_serializers
from framecall._internal.rpc_serialization import (
    NotCloneableError,
    collect_transferables,
    rehydrate,
    to_cloneable,
)
from framecall._internal.rpc_transports import JSONSocketTransport, QueueTransport, RPCTransport
from framecall._internal.serialization_registry import SerializerRegistry
from framecall._internal.values import Name


class Point:
    def __init__(self, x, y):
        self.x = x
        self.y = y


class Point3(Point):
    pass


@pytest.fixture
def socket_pair():
    a, b = socket.socketpair()
    left, right = JSONSocketTransport(a), JSONSocketTransport(b)
    yield left, right
    left.close()
    right.close()


@pytest.fixture
def registry():
    registry = SerializerRegistry()
    register_numpy_serializers(registry)
    return registry


class TestTransports:
    def test_protocol_conformance(self, socket_pair):
        left, _ = socket_pair
        host, _ = QueueTransport.pair()

        assert isinstance(left, RPCTransport)
        assert isinstance(host, RPCTransport)

    def test_json_round_trip(self, socket_pair):
        left, right = socket_pair
        message = {"id": 1, "type": "run", "code": "x = 1", "target": None}

        left.send(message)
        assert right.recv() == message

    def test_buffers_sent_out_of_band(self, socket_pair):
        left, right = socket_pair
        payload = bytearray(b"\x00\x01\x02")
        inline = b"hello"

        left.send({"value": {"kind": "buffer", "value": payload}, "extra": inline}, [payload])
        received = right.recv()

        assert received["value"]["value"] == b"\x00\x01\x02"
        assert received["extra"] == b"hello"

    def test_names_restored(self, socket_pair):
        left, right = socket_pair

        left.send({"result": Name("df", partial=True)})
        result = right.recv()["result"]

        assert isinstance(result, Name)
        assert result.partial

    def test_closed_peer(self, socket_pair):
        left, right = socket_pair
        left.close()

        with pytest.raises(ConnectionError):
            right.recv()

    def test_queue_pair_is_crossed(self):
        host, worker = QueueTransport.pair()

        host.send({"id": 1})
        worker.send({"id": 2})

        assert worker.recv() == {"id": 1}
        assert host.recv() == {"id": 2}


class TestCloneable:
    def test_plain_values_kept(self, registry):
        value = {"a": [1, 2.5, "x", None], "b": (True, b"raw"), "c": Name("df")}

        assert to_cloneable(value, registry) == value

    def test_unknown_objects_rejected(self, registry):
        with pytest.raises(NotCloneableError):
            to_cloneable({"p": Point(1, 2)}, registry)

    def test_object_keys_rejected(self, registry):
        with pytest.raises(NotCloneableError):
            to_cloneable({Point(1, 2): 1}, registry)

    def test_numpy_round_trip(self, registry):
        array = np.arange(6, dtype=np.int32).reshape(2, 3)

        wire = to_cloneable({"arr": array, "n": np.float64(1.5)}, registry)
        back = rehydrate(wire, registry)

        assert wire["n"] == 1.5
        assert back["arr"].dtype == np.int32
        np.testing.assert_array_equal(back["arr"], array)

    def test_object_arrays_rejected(self, registry):
        with pytest.raises(NotCloneableError):
            to_cloneable(np.array([Point(0, 0)], dtype=object), registry)

    def test_rehydrate_names(self, registry):
        back = rehydrate([{"name": "t", "_kind": "name"}], registry)
        assert isinstance(back[0], Name)

    def test_collect_transferables(self):
        a, b = b"a", bytearray(b"b")
        assert collect_transferables({"x": [a, {"y": b}], "z": 1}) == [a, b]


class TestSerializerRegistry:
    def test_custom_serializer_follows_mro(self, registry):
        registry.register(
            "Point",
            lambda p: {"__type__": "Point", "x": p.x, "y": p.y},
            lambda d: Point(d["x"], d["y"]),
        )

        wire = to_cloneable(Point3(1, 2), registry)
        back = rehydrate(wire, registry)

        assert wire == {"__type__": "Point", "x": 1, "y": 2}
        assert isinstance(back, Point)
        assert (back.x, back.y) == (1, 2)

    def test_unknown_tag_left_as_dict(self, registry):
        assert rehydrate({"__type__": "Mystery", "v": 1}, registry) == {"__type__": "Mystery", "v": 1}

    def test_clear(self, registry):
        assert registry.has_handler("ndarray")
        registry.clear()
        assert not registry.has_handler("ndarray")
