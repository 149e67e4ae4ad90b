"""SmartApp Bridge: SmartThings SmartApp webhooks to a local device event stream."""

__version__ = "1.0.0"
