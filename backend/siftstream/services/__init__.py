"""Service modules."""

# Export core services
from siftstream.services.analysis_gateway import analysis_gateway
from siftstream.services.model_catalog import model_catalog
from siftstream.services.stream_relay import stream_relay
