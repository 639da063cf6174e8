import json
import socket

import pytest

from nvr_agent.utils.camera_loader import camera_config_from_dict


class FakeRelaySocket:
    """
    In-memory stand-in for the relay's SOCK_SEQPACKET socket.

    Understands the streaming-plugin requests used by JanusClient and keeps a
    registry of mountpoints so tests can inspect the end state.
    """

    def __init__(self, registrations=None, chunk_size=None, fail_connect=False,
                 ack_keepalives=True, reject_create=False):
        self.registrations = dict(registrations or {})
        self.chunk_size = chunk_size
        self.fail_connect = fail_connect
        self.ack_keepalives = ack_keepalives
        self.reject_create = reject_create
        self.requests = []
        self.bodies = []
        self.keepalives = 0
        self.closed = False
        self._outgoing = []

    # socket API -----------------------------------------------------------

    def connect(self, path):
        if self.fail_connect:
            raise FileNotFoundError(2, "No such file or directory", path)

    def settimeout(self, value):
        pass

    def send(self, data):
        request = json.loads(data.decode("utf-8"))
        self.requests.append(request)
        reply = json.dumps(self._respond(request)).encode("utf-8")
        if self.chunk_size:
            for i in range(0, len(reply), self.chunk_size):
                self._outgoing.append(reply[i:i + self.chunk_size])
        else:
            self._outgoing.append(reply)
        return len(data)

    def recv(self, size):
        if not self._outgoing:
            raise socket.timeout("timed out")
        return self._outgoing.pop(0)

    def close(self):
        self.closed = True

    # relay behaviour ------------------------------------------------------

    def _respond(self, request):
        kind = request["janus"]
        transaction = request["transaction"]
        if kind == "create":
            return {"janus": "success", "transaction": transaction, "data": {"id": 1111}}
        if kind == "attach":
            return {"janus": "success", "session_id": 1111, "transaction": transaction,
                    "data": {"id": 2222}}
        if kind == "keepalive":
            self.keepalives += 1
            if self.ack_keepalives:
                return {"janus": "ack", "session_id": 1111, "transaction": transaction}
            return {"janus": "error", "transaction": transaction,
                    "error": {"code": 458, "reason": "No such session"}}
        if kind == "message":
            body = request["body"]
            self.bodies.append(body)
            return self._plugin_reply(transaction, self._plugin(body))
        return {"janus": "error", "transaction": transaction,
                "error": {"code": 453, "reason": "Unknown request"}}

    def _plugin(self, body):
        request = body["request"]
        if request == "list":
            streams = [{"id": sid, "description": desc} for sid, desc in self.registrations.items()]
            return {"streaming": "list", "list": streams}
        if request == "destroy":
            sid = body["id"]
            if sid not in self.registrations:
                return {"streaming": "event", "error_code": 455, "error": f"No such mountpoint/stream ({sid})"}
            del self.registrations[sid]
            return {"streaming": "destroyed", "destroyed": sid}
        if request == "create":
            sid = body["id"]
            if self.reject_create or sid in self.registrations:
                return {"streaming": "event", "error_code": 456, "error": f"A stream with the provided ID {sid} already exists"}
            self.registrations[sid] = body["description"]
            return {"streaming": "created", "created": body["name"], "permanent": False,
                    "stream": {"id": sid, "type": "live", "description": body["description"]}}
        return {"streaming": "event", "error_code": 411, "error": f"Unknown request '{request}'"}

    @staticmethod
    def _plugin_reply(transaction, data):
        return {"janus": "success", "session_id": 1111, "transaction": transaction,
                "sender": 2222,
                "plugindata": {"plugin": "janus.plugin.streaming", "data": data}}


@pytest.fixture
def relay():
    return FakeRelaySocket()


@pytest.fixture
def camera_dict(tmp_path):
    return {
        "name": "Front Door",
        "ipAddress": "10.0.0.31",
        "port": 554,
        "rtspUsername": "admin",
        "rtspPassword": "p@ss:word",
        "streamURL": "/Streaming/Channels/101",
        "subStreamURL": "/Streaming/Channels/102",
        "snapshotURL": "/ISAPI/Streaming/channels/101/picture",
        "outputPath": str(tmp_path / "nvr"),
        "type": "h265",
        "splitEvery": 300,
        "snapshotEvery": 30,
        "hardwareEncoderPriority": "vaapi",
    }


@pytest.fixture
def camera(camera_dict):
    return camera_config_from_dict("camera-7", camera_dict)
