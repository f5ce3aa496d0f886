import asyncio


def no_backoff(attempts):
    return 0


class FlakySave:
    """save(payload): падает `failures` раз подряд, потом отвечает `result`."""

    def __init__(self, failures=0, result=None, error=ConnectionError("backend unavailable")):
        self.failures = failures
        self.result = result
        self.error = error
        self.calls = []
        self.in_flight = {}
        self.max_in_flight_per_item = 0
        self.max_in_flight = 0

    async def __call__(self, payload):
        key = payload.get("barcode")
        self.calls.append(payload)
        self.in_flight[key] = self.in_flight.get(key, 0) + 1
        self.max_in_flight_per_item = max(self.max_in_flight_per_item, self.in_flight[key])
        self.max_in_flight = max(self.max_in_flight, sum(self.in_flight.values()))
        try:
            await asyncio.sleep(0.001)
            if self.failures > 0:
                self.failures -= 1
                raise self.error
            return self.result
        finally:
            self.in_flight[key] -= 1
