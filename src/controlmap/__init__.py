"""controlmap - compliance control mapping and gap analysis engine."""

__version__ = "1.0.0"
