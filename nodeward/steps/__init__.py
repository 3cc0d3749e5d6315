"""Packaged step definitions, one <step>.yaml per provisioning step."""
