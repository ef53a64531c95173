"""HTTP surface of ci-script."""
