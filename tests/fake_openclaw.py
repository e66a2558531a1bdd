#!/usr/bin/env python3
"""
Stand-in for the OpenClaw CLI entry, run as `python fake_openclaw.py <args>`.

`gateway run --port N` serves HTTP on 127.0.0.1:N and echoes each request
back as JSON. Setting FAKE_OPENCLAW_NO_LISTEN makes it run without ever
listening. Every invocation is appended to FAKE_OPENCLAW_LOG if set.
"""

import json
import os
import sys
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer


class EchoHandler(BaseHTTPRequestHandler):
    def _echo(self):
        length = int(self.headers.get("content-length") or 0)
        body = self.rfile.read(length).decode("utf-8", errors="replace") if length else ""
        payload = json.dumps({
            "method": self.command,
            "path": self.path,
            "authorization": self.headers.get("authorization"),
            "host": self.headers.get("host"),
            "xForwardedFor": self.headers.get("x-forwarded-for"),
            "xForwardedProto": self.headers.get("x-forwarded-proto"),
            "body": body,
        }).encode("utf-8")
        self.send_response(200)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(payload)))
        self.send_header("X-Fake-Gateway", "1")
        self.end_headers()
        self.wfile.write(payload)

    do_GET = do_POST = do_PUT = do_PATCH = do_DELETE = _echo

    def log_message(self, format, *args):
        pass


def gateway_run(args):
    port = int(args[args.index("--port") + 1])
    if os.environ.get("FAKE_OPENCLAW_NO_LISTEN"):
        time.sleep(3600)
        return 0
    server = ThreadingHTTPServer(("127.0.0.1", port), EchoHandler)
    server.serve_forever()
    return 0


def main(args):
    log = os.environ.get("FAKE_OPENCLAW_LOG")
    if log:
        with open(log, "a") as f:
            f.write(json.dumps({"argv": args, "stateDir": os.environ.get("OPENCLAW_STATE_DIR")}) + "\n")

    if args[:1] == ["--version"]:
        print("openclaw 2026.1.0-fake")
        return 0
    if args[:2] == ["gateway", "run"]:
        return gateway_run(args)
    if args[:1] in (["status"], ["health"]):
        print(f"{args[0]}: ok")
        return 0
    if args[:1] == ["doctor"]:
        print("doctor: gateway config ok, key sk-abcdefghijklmnopqrstuv")
        return 0
    if args[:2] == ["logs", "--tail"]:
        print(f"tail {args[2]}")
        return 0
    if args[:2] == ["config", "get"]:
        if args[2] == "channels.telegram":
            print('{"enabled": true, "botToken": "123456:ABCDEFGHIJKLMNOPQRST"}')
        else:
            print(f"value of {args[2]}")
        return 0
    if args[:2] == ["devices", "list"]:
        print("Pending:")
        print("  requestId=abc123def device=laptop")
        print('  {"requestId": "xyz789uvw"}')
        print("  requestId: abc123def")
        print("  bot 123456:ABCDEFGHIJKLMNOPQRST")
        return 0
    if args[:2] == ["devices", "approve"]:
        print(f"approved {args[2]}")
        return 0
    if args[:2] == ["pairing", "approve"]:
        print(f"paired {args[2]} {args[3]}")
        return 0
    if args[:2] == ["plugins", "list"]:
        print("plugins: telegram, discord")
        return 0
    if args[:2] == ["plugins", "enable"]:
        print(f"enabled {args[2]}")
        return 0
    if args[:1] == ["sleep"]:
        time.sleep(float(args[1]))
        return 0
    if args[:1] == ["fail"]:
        print("something went wrong")
        return 3

    print(f"unknown command: {' '.join(args)}", file=sys.stderr)
    return 2


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
