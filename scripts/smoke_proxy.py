import os
import sys

import requests

# Smoke test against a running instance:
#   PROXY_URL=http://127.0.0.1:8080 PROXY_TOKEN=... python scripts/smoke_proxy.py
proxy_url = os.environ.get("PROXY_URL", "http://127.0.0.1:8080")
token = os.environ.get("PROXY_TOKEN", "")
target = os.environ.get("SMOKE_TARGET", "http://example.com/")

r = requests.get(f"{proxy_url}/health", timeout=5)
assert r.status_code == 200 and r.text == "OK", f"health failed: {r.status_code} {r.text!r}"

r = requests.get(target, proxies={"http": proxy_url}, timeout=10)
assert r.status_code == 403, f"expected 403 without token, got {r.status_code}"

if token:
    r = requests.get(target, proxies={"http": proxy_url}, headers={"X-Proxy-Token": token}, timeout=10)
    assert r.status_code < 500, f"forward failed: {r.status_code} {r.text[:200]!r}"
    print(f"forward ok status={r.status_code} bytes={len(r.content)}")
else:
    print("PROXY_TOKEN not set; skipped authenticated forward", file=sys.stderr)

print("secure-proxy smoke test passed")
