"""Build-and-deploy pipeline: durable job queue, build worker, artifact uploader."""
