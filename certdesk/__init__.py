"""Certificate request ticketing: ticket store, notification dispatch and console sync."""
