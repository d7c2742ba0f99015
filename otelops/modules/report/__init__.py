"""
Report Module - Black Box Interface

Purpose: Render a finalized RunReport
Interface: ReportFormatter.render(), render_json(), print(), exit_code()
Hidden: Table layout, symbols, hints
"""

from .formatter import ReportFormatter, excerpt

__all__ = ["ReportFormatter", "excerpt"]
