"""
otelops Modules - Black Box Architecture

Each module is a self-contained black box with a public interface
and hidden implementation details. Modules communicate only through
the shared models in the api module.
"""
