"""Worker session launch and supervision plus external tool adapters."""
