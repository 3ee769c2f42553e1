"""Streaming upload pipeline: multipart reader, validation guard, relay and store writer."""
