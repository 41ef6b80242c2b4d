"""Provisioning steps run against a live sandbox: dependency installation,
dev-server launch, health checks and the end-to-end preview flow."""
