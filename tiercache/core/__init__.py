"""Core configuration for tiercache."""
