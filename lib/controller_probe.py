import time

import requests
import urllib3

# The controller is probed by hostname while it may still be serving the
# previous (or a self-signed) certificate, so TLS verification is off here.
urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)


class ControllerProbe:
    """Polls the controller's unauthenticated /status endpoint after a restart.

    UniFi answers with {"meta": {"rc": "ok", "up": true, ...}} once the
    application has finished starting.
    """

    def __init__(self, url: str, timeout: float = 180, interval: float = 5):
        self.url = url
        self.timeout = timeout
        self.interval = interval
        self._session = requests.Session()

    def is_up(self) -> bool:
        try:
            r = self._session.get(self.url, timeout=10, verify=False)
            r.raise_for_status()
            meta = r.json().get("meta", {})
        except (requests.RequestException, ValueError):
            return False
        return bool(meta.get("up", meta.get("rc") == "ok"))

    def wait_until_up(self) -> bool:
        """Return True once the controller reports up, False if *timeout* elapses first."""
        deadline = time.monotonic() + self.timeout
        while True:
            if self.is_up():
                return True
            if time.monotonic() >= deadline:
                return False
            time.sleep(self.interval)
