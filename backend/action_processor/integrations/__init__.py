"""HTTP integrations: generic outbound calls and platform clients."""
