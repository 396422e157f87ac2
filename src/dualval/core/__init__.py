"""DualVal core types: enums, exceptions and schemas."""
