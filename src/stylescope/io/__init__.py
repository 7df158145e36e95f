"""Serialization of engine outputs."""

from stylescope.io.exporter import DecisionExporter

__all__ = ["DecisionExporter"]
