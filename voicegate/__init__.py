"""Voice-activity-triggered segmentation of a live audio stream."""
