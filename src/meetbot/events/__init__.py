"""Bot domain events and the in-process fire-and-forget EventEmitter."""
