"""Drive a browser to a streaming page and proxy an HDMI encoder's TS feed."""

__version__ = "0.1.0"
