"""Write-side service for attachments."""
