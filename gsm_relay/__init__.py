"""Local registry and SMS command console for GSM gate-relay controllers."""
