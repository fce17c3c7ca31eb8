"""Tracing core: IR, traces, shape inference, lowering and marshalling."""
