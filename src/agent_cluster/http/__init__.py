"""HTTP helpers shared by notifier and scanners."""
