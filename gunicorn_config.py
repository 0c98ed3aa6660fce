# Gunicorn Configuration for Production Deployment
# Export state (segment store, playback sessions, export cache) lives in the
# worker process, so exactly one worker must serve every request.

# Server socket
bind = "0.0.0.0:5000"
backlog = 2048

# Worker processes
workers = 1
threads = 4  # Status polls and playback lookups while an export is recording
worker_class = "gthread"
timeout = 1200  # 20 minutes for long exports
keepalive = 5

# Logging
accesslog = "-"  # Log to stdout
errorlog = "-"   # Log to stderr
loglevel = "info"
access_log_format = '%(h)s %(l)s %(u)s %(t)s "%(r)s" %(s)s %(b)s "%(f)s" "%(a)s" %(D)s'

# Process naming
proc_name = "caption-burner"

# Server mechanics
daemon = False
pidfile = None
umask = 0
user = None
group = None
tmp_upload_dir = None

# Request limits
limit_request_line = 0
limit_request_fields = 100
limit_request_field_size = 0
