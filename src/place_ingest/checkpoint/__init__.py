"""Region checkpoints and batch execution tracking for resumable runs."""
