"""Microsoft Graph mail API access: HTTP client, message and category managers, mailbox adapter."""
