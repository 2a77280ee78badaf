"""DNS, TLS and HTTP probe runners for monitored domains."""
