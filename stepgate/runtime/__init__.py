"""Runtime layer: session model, step flow, workers and external tracker."""
