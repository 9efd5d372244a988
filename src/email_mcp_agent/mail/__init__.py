"""Mail transport: IMAP/SMTP access, message parsing and HTML rendering."""
