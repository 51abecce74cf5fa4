#!/usr/bin/env python3
"""
Local smoke test for the device registry command flow.

Prereqs:
- API server running (default http://127.0.0.1:3000)
- ADMIN_TOKEN set to the same value the server uses
"""

import os
import secrets
import sys
import uuid

import httpx


def fail(message):
    print("FAIL:", message)
    sys.exit(1)


def main():
    base_url = os.getenv("BASE_URL", "http://127.0.0.1:3000").rstrip("/")
    admin_token = os.getenv("ADMIN_TOKEN")
    if not admin_token:
        fail("ADMIN_TOKEN is required")

    device_id = "smoke-" + str(uuid.uuid4())[:8]
    secret = secrets.token_hex(16)
    admin_headers = {"Authorization": "Bearer " + admin_token}
    creds = {"deviceId": device_id, "secret": secret}

    with httpx.Client(base_url=base_url, timeout=10.0) as client:
        # 1) health
        health = client.get("/healthz")
        if health.status_code != 200:
            fail("healthz failed: %s %s" % (health.status_code, health.text))
        print("OK: healthz")

        # 2) register claims the identity
        reg = client.post(
            "/api/register",
            json=dict(creds, hostname="smoke-host", osName="Linux", osVersion="smoke", appVersion="0.0.0-smoke"),
        )
        if reg.status_code != 200 or reg.json().get("bootstrapped") is not True:
            fail("register failed: %s %s" % (reg.status_code, reg.text))
        print("OK: registered", device_id)

        # 3) a different secret is refused
        bad = client.post("/api/heartbeat", json={"deviceId": device_id, "secret": secret[::-1]})
        if bad.status_code != 401:
            fail("expected 401 for wrong secret, got: %s %s" % (bad.status_code, bad.text))
        print("OK: wrong secret rejected")

        # 4) admin enqueues a command
        enq = client.post(
            "/admin/api/devices/%s/commands" % device_id,
            json={"kind": "ping", "payload": {"smoke": True}},
            headers=admin_headers,
        )
        if enq.status_code != 200:
            fail("enqueue failed: %s %s" % (enq.status_code, enq.text))
        cmd_id = enq.json()["id"]

        # 5) device polls and gets it
        first = client.post("/api/poll", json=dict(creds, maxCount=5))
        if first.status_code != 200:
            fail("poll failed: %s %s" % (first.status_code, first.text))
        delivered = [c["id"] for c in first.json()["commands"]]
        if delivered != [cmd_id]:
            fail("unexpected delivery: %s" % delivered)

        # 6) device reports the result on the next poll
        second = client.post("/api/poll", json=dict(creds, results=[{"id": cmd_id, "succeeded": True}]))
        if second.status_code != 200 or second.json().get("recorded") != 1:
            fail("result report failed: %s %s" % (second.status_code, second.text))
        if second.json()["commands"]:
            fail("command was delivered twice")
        print("OK: command lifecycle")

        detail = client.get("/admin/api/commands/%s" % cmd_id, headers=admin_headers)
        if detail.status_code != 200 or detail.json()["command"]["status"] != "done":
            fail("command detail failed: %s %s" % (detail.status_code, detail.text))

        retire = client.post(
            "/admin/api/devices/%s/status" % device_id, json={"status": "retired"}, headers=admin_headers
        )
        if retire.status_code != 200:
            fail("retire failed: %s %s" % (retire.status_code, retire.text))

    print("PASS: registry smoke test completed")


if __name__ == "__main__":
    main()
