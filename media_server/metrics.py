from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.responses import Response

chunks_received_total = Counter("chunks_received_total", "Total chunks written to staging")
bytes_received_total = Counter("bytes_received_total", "Total chunk bytes written to staging")
chunk_write_failures_total = Counter("chunk_write_failures_total", "Total failed chunk writes")

assemblies_total = Counter("assemblies_total", "Assembly attempts by outcome", ["outcome"])
assembled_bytes_total = Counter("assembled_bytes_total", "Total bytes published as assembled objects")
assembly_duration_seconds = Histogram("assembly_duration_seconds", "Chunk concatenation latency in seconds")

stream_requests_total = Counter("stream_requests_total", "Stream requests by status code", ["status_code"])
bytes_streamed_total = Counter("bytes_streamed_total", "Total object bytes sent to clients")

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "route", "status_code"],
)


def metrics_response() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
