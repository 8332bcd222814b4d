"""Model assets: the static catalog and the download/verify provisioner."""
