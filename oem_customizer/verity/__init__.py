"""dm-verity sealing of the OEM partition."""
