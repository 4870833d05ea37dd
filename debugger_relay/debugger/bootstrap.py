"""
JavaScript wrapped around every bundle executed in a sandbox worker.

The worker program is rendered from WORKER_TEMPLATE with four named slots:

    bootstrap            message-loop shim (onmessage/postMessage/importScripts)
    console_trace_patch  console.trace that prints to stdout without bootstrap frames
    bundle               the debugger worker script downloaded from the proxy
    worker_done          emits the ready sentinel over IPC

The ready sentinel is always the last statement, so the supervisor-side
code can rely on every bootstrap and bundle statement having run once it
is received.
"""

from string import Template

READY_SENTINEL_KEY = "workerLoaded"

WORKER_BOOTSTRAP = r"""// Initialize some variables before react-native code would access them
var onmessage = null, self = global;
// Cache Node's original require as __debug__.require
global.__debug__ = { require: require };
// Pure React Native does not expose process.versions and some packages rely on that
Object.defineProperty(process, "versions", {
    value: undefined
});
function fileUrlToPath(url) {
    if (process.platform === "win32") {
        return url.toString().replace("file:///", "");
    }
    return url.toString().replace("file://", "");
}
function getNativeModules() {
    var NativeModules;
    try {
        // Old React Native versions register NativeModules by name
        NativeModules = global.require("NativeModules");
    } catch (err) {
        try {
            var nativeModuleId;
            var modules = global.__r.getModules();
            var ids = Object.keys(modules);
            for (var i = 0; i < ids.length; i++) {
                if (modules[ids[i]].verboseName) {
                    var packagePath = new String(modules[ids[i]].verboseName);
                    if (packagePath.indexOf("react-native/Libraries/BatchedBridge/NativeModules.js") > 0) {
                        nativeModuleId = parseInt(ids[i], 10);
                        break;
                    }
                }
            }
            if (nativeModuleId) {
                NativeModules = global.__r(nativeModuleId);
            }
        } catch (err) {
            // not a React Native bundle
        }
    }
    return NativeModules;
}
var vscodeHandlers = {
    "vscode_reloadApp": function () {
        var NativeModules = getNativeModules();
        if (NativeModules && NativeModules.DevMenu) {
            NativeModules.DevMenu.reload();
        }
    },
    "vscode_showDevMenu": function () {
        var NativeModules = getNativeModules();
        if (NativeModules && NativeModules.DevMenu) {
            NativeModules.DevMenu.show();
        }
    }
};
process.on("message", function (message) {
    if (message.data && vscodeHandlers[message.data.method]) {
        vscodeHandlers[message.data.method]();
    } else if (onmessage) {
        onmessage(message);
    }
});
var postMessage = function (message) {
    process.send(message);
};
if (!self.postMessage) {
    self.postMessage = postMessage;
}
var importScripts = (function () {
    var fs = require("fs"), vm = require("vm");
    return function (scriptUrl) {
        scriptUrl = fileUrlToPath(scriptUrl);
        var scriptCode = fs.readFileSync(scriptUrl, "utf8");
        vm.runInThisContext(scriptCode, { filename: scriptUrl });
    };
})();"""

CONSOLE_TRACE_PATCH = r"""// The worker runs as a Node process where console.trace() writes to stderr.
// Print the trace to stdout instead, starting at the caller's frame.
console.trace = (function () {
    return function () {
        try {
            var err = {
                name: "Trace",
                message: require("util").format.apply(null, arguments)
            };
            // Node uses 10, which is rarely enough for a React Native trace
            Error.stackTraceLimit = 30;
            Error.captureStackTrace(err, console.trace);
            console.log(err.stack);
        } catch (e) {
            console.error(e);
        }
    };
})();"""

WORKER_DONE = r"""// Notify the debugger that loading is done and IPC messages can be delivered
postMessage({ workerLoaded: true });"""

WORKER_TEMPLATE = Template(
    "${bootstrap}\n${console_trace_patch}\n${bundle}\n${worker_done}\n"
)


def render_worker_script(bundle: str) -> str:
    """Wrap bundle text with the sandbox bootstrap and the ready sentinel."""
    return WORKER_TEMPLATE.substitute(
        bootstrap=WORKER_BOOTSTRAP,
        console_trace_patch=CONSOLE_TRACE_PATCH,
        bundle=bundle,
        worker_done=WORKER_DONE,
    )


def is_ready_sentinel(message: object) -> bool:
    return isinstance(message, dict) and message.get(READY_SENTINEL_KEY) is True
