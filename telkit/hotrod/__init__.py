"""Ride-dispatch demo services with simulated latency, contention and failures."""