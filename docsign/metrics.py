from prometheus_client import Counter, Histogram

REQS = Counter("docsign_requests_total", "Total requests", ["path", "method", "status"])
LAT = Histogram("docsign_request_latency_seconds", "Latency", ["path", "method"])
SIGNATURES = Counter("docsign_signatures_total", "Signatures accepted", ["flow"])
SESSIONS = Counter("docsign_sessions_total", "Session lifecycle transitions", ["status"])
QR_PAYLOADS = Counter("docsign_qr_payloads_total", "QR payloads encoded", ["kind"])
VERIFICATIONS = Counter("docsign_verifications_total", "Verification outcomes", ["flow", "reason"])
