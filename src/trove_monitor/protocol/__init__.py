"""Protocol readers - troves, redemptions, gauges, bridge balances and quotes."""
