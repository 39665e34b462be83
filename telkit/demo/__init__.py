"""Load-generating demo: an HTTP server, its client and a request controller."""