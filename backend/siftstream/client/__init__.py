"""
Client SDK: typed access to the SIFT Stream API plus the conversation
state that streamed reports are reconciled into.
"""

from siftstream.client.api_client import LineStream, SiftApiClient, StreamHandle
from siftstream.client.consumer import StreamConsumer
from siftstream.client.controller import AnalysisQuery, CancellationToken, SessionController
from siftstream.client.store import ChatMessage, MessageState, MessageStateStore, reduce_frame
